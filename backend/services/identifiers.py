"""Lab test identifiers.

Internally a test is addressed by a tagged reference: either a lab order id or
the (prescription id, test name) pair. Only at the transport boundary is the
reference serialized to ``order-<id>`` or ``prescription-<id>-<name>`` with the
test name percent-encoded, so names containing ``-`` or ``/`` round-trip.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union
from urllib.parse import quote, unquote

from errors import NotFound
from models import Provenance

ORDER_PREFIX = "order-"
PRESCRIPTION_PREFIX = "prescription-"


@dataclass(frozen=True)
class OrderRef:
    order_id: int

    @property
    def provenance(self) -> Provenance:
        return Provenance.ORDERED


@dataclass(frozen=True)
class PrescribedRef:
    prescription_id: int
    test_name: str

    @property
    def provenance(self) -> Provenance:
        return Provenance.PRESCRIBED


TestRef = Union[OrderRef, PrescribedRef]


def format_test_id(ref: TestRef) -> str:
    if isinstance(ref, OrderRef):
        return f"{ORDER_PREFIX}{ref.order_id}"
    return f"{PRESCRIPTION_PREFIX}{ref.prescription_id}-{quote(ref.test_name, safe='')}"


def _unknown(test_id: str, reason: str) -> NotFound:
    return NotFound(f"Lab test '{test_id}' not found: {reason}", test_id=test_id)


def _parse_int(raw: str, test_id: str) -> int:
    if not raw.isdigit():
        raise _unknown(test_id, "id is not a number")
    return int(raw)


def parse_test_id(test_id: str) -> TestRef:
    """Inverse of ``format_test_id``.

    The prescription id is split off at the first ``-`` only, so legacy ids
    whose test name was not encoded still resolve when the name contains ``-``.
    An id that does not parse cannot name a stored test, so it is NotFound.
    """
    raw = (test_id or "").strip()
    if raw.startswith(ORDER_PREFIX):
        return OrderRef(order_id=_parse_int(raw[len(ORDER_PREFIX):], raw))

    if raw.startswith(PRESCRIPTION_PREFIX):
        prescription_raw, sep, name_raw = raw[len(PRESCRIPTION_PREFIX):].partition("-")
        if not sep or not name_raw:
            raise _unknown(raw, "missing test name")
        test_name = unquote(name_raw)
        if not test_name.strip():
            raise _unknown(raw, "missing test name")
        return PrescribedRef(prescription_id=_parse_int(prescription_raw, raw), test_name=test_name)

    raise _unknown(raw, f"expected '{ORDER_PREFIX}' or '{PRESCRIPTION_PREFIX}' prefix")


def prescription_order_number(prescription_id: int) -> str:
    return f"PRES-{prescription_id}"
