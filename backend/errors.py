from __future__ import annotations

from typing import Any


class LabWorkflowError(Exception):
    """Base class for command failures. The record is left as it was."""

    code = "lab_workflow_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class PreconditionFailed(LabWorkflowError):
    code = "precondition_failed"
    status_code = 409


class NotFound(LabWorkflowError):
    code = "not_found"
    status_code = 404


class ValidationError(LabWorkflowError):
    code = "validation_error"
    status_code = 422


class TransientStoreError(LabWorkflowError):
    code = "transient_store_error"
    status_code = 503
    retryable = True


class ConcurrentUpdate(TransientStoreError):
    """Conditional write lost against another writer."""

    code = "concurrent_update"
