"""Who may do what in the lab workflow.

Staff (admin, lab tech) run commands, doctors may also read the unified
view, and patients only ever see their own tests. Tokens are HMAC-signed
``header.payload.signature`` strings carrying the user id, role and, for
patients, the linked patient id.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlmodel import Session, select

from config import AUTH_SECRET, TOKEN_TTL_SECONDS
from database import get_session
from errors import NotFound
from models import User, UserRole

logger = logging.getLogger("labflow")

STAFF_ROLES = (UserRole.ADMIN, UserRole.LAB_TECH)
VIEWER_ROLES = (UserRole.ADMIN, UserRole.LAB_TECH, UserRole.DOCTOR)

PASSWORD_SCHEME = "pbkdf2_sha256"
PBKDF2_ITERATIONS = 200_000
TOKEN_HEADER = {"alg": "HS256", "typ": "JWT"}


def _encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


# --- passwords ---

def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode(), salt, iterations)


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password cannot be empty")
    salt = secrets.token_bytes(16)
    digest = _pbkdf2(password, salt, PBKDF2_ITERATIONS)
    return "$".join([PASSWORD_SCHEME, str(PBKDF2_ITERATIONS), _encode(salt), _encode(digest)])


def verify_password(password: str, stored: str) -> bool:
    parts = stored.split("$")
    if len(parts) != 4 or parts[0] != PASSWORD_SCHEME:
        return False
    try:
        iterations, salt, expected = int(parts[1]), _decode(parts[2]), _decode(parts[3])
    except ValueError:
        return False
    return hmac.compare_digest(_pbkdf2(password, salt, iterations), expected)


# --- tokens ---

def _sign(message: str) -> str:
    return _encode(hmac.new(AUTH_SECRET.encode(), message.encode(), hashlib.sha256).digest())


def issue_token(user: User) -> str:
    if user.id is None:
        raise ValueError("User id is required to issue token")
    claims = {
        "sub": str(user.id),
        "role": user.role.value,
        "pid": user.patient_id,
        "exp": int(time.time()) + TOKEN_TTL_SECONDS,
    }
    message = ".".join(
        _encode(json.dumps(part, separators=(",", ":")).encode()) for part in (TOKEN_HEADER, claims)
    )
    return f"{message}.{_sign(message)}"


def read_token(token: str) -> dict:
    """Claims of a token whose signature and expiry check out."""
    message, _, signature = token.rpartition(".")
    if not message or message.count(".") != 1:
        raise _unauthorized("Invalid token")
    if not hmac.compare_digest(_sign(message), signature):
        raise _unauthorized("Invalid token signature")
    try:
        claims = json.loads(_decode(message.split(".")[1]))
    except ValueError as exc:
        raise _unauthorized("Invalid token payload") from exc
    if not isinstance(claims.get("exp"), int) or claims["exp"] < int(time.time()):
        raise _unauthorized("Token expired")
    return claims


def resolve_user(token: str, session: Session) -> User:
    claims = read_token(token)
    try:
        user = session.get(User, int(claims.get("sub") or ""))
    except ValueError as exc:
        raise _unauthorized("Invalid token subject") from exc
    if user is None or not user.is_active:
        raise _unauthorized("User inactive or missing")
    return user


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    session: Session = Depends(get_session),
) -> User:
    scheme, _, token = (authorization or "").partition(" ")
    if not authorization:
        raise _unauthorized("Missing Authorization header")
    if scheme != "Bearer" or not token.strip():
        raise _unauthorized("Invalid auth scheme")
    return resolve_user(token.strip(), session)


def authenticate(email: str, password: str, session: Session) -> Optional[User]:
    user = session.exec(select(User).where(User.email == email.strip().lower())).first()
    if user is None or not user.is_active or not verify_password(password, user.password_hash):
        return None
    return user


# --- roles and ownership ---

def require_roles(*roles: UserRole) -> Callable:
    allowed = {role.value for role in roles}

    async def _dependency(request: Request, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role.value not in allowed:
            logger.warning(
                "[AUTH] %s blocked on %s %s (allowed: %s)",
                actor_label(current_user),
                request.method,
                request.url.path,
                ", ".join(sorted(allowed)),
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{current_user.role.value}' is not allowed",
            )
        return current_user

    return _dependency


requires_staff = require_roles(*STAFF_ROLES)
requires_viewer = require_roles(*VIEWER_ROLES)
requires_admin = require_roles(UserRole.ADMIN)
requires_patient = require_roles(UserRole.PATIENT)


def is_staff(user: User) -> bool:
    return user.role in STAFF_ROLES


def is_patient(user: User) -> bool:
    return user.role == UserRole.PATIENT


def owns(user: User, patient_id: Optional[int]) -> bool:
    return user.patient_id is not None and patient_id == user.patient_id


def ensure_can_view(record, user: User) -> None:
    """Patients get NotFound for tests that are not theirs, so ids do not leak."""
    if is_patient(user) and not owns(user, record.patient_id):
        raise NotFound(f"Lab test '{record.id}' not found", test_id=record.id)


def can_open_patient_channel(user: User, patient_id: int) -> bool:
    return not is_patient(user) or owns(user, patient_id)


def actor_label(actor: Optional[User]) -> str:
    if actor is None:
        return "system"
    return f"{actor.role.value}#{actor.id}"


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "patient_id": user.patient_id,
    }
