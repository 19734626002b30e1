"""
auth/credentials.py -- Password hashing, authentication, and identity validation.

Passwords: bcrypt used directly (no passlib wrapper). Bcrypt's cost factor
    makes brute-forcing low-entropy secrets expensive and checkpw() compares
    in constant time. The _DUMMY_HASH constant enables timing equalization in
    authenticate_user() so response time does not reveal whether an email is
    registered.

    bcrypt only looks at the first 72 bytes of input (and bcrypt 5 refuses
    longer input outright), so register/update reject passwords above that.

Identity fields: checked deterministically before anything reaches the store.
    email     -- trimmed, lowercased, must look like local@domain.tld
    id_number -- non-digits stripped; 11 digits = CPF, 14 digits = CNPJ
    phone     -- non-digits stripped; 8 to 15 digits (E.164 upper bound)

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict, NotFound, ValidationFailed
from auth.models import ROLES, User
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("pyroalert.auth")

_settings = get_settings()

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIGITS = re.compile(r"\D")
_BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input. Either way: no match.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("pyroalert_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure. The caller must not
    distinguish the failure causes in its response.
    """
    user = store.get_by_email(email)
    if user is None or not user.hashed_password:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Field normalization
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    value = (email or "").strip().lower()
    if not _EMAIL_RE.match(value) or len(value) > 255:
        raise ValidationFailed("email", "Invalid email address.")
    return value


def normalize_id_number(id_number: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Return (digits, id_type) for a CPF/CNPJ, or (None, None) when absent."""
    if not id_number:
        return None, None
    digits = _NON_DIGITS.sub("", id_number)
    if len(digits) == 11:
        return digits, "CPF"
    if len(digits) == 14:
        return digits, "CNPJ"
    raise ValidationFailed("id_number", "id_number must be a valid CPF (11 digits) or CNPJ (14 digits).")


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    if not 8 <= len(digits) <= 15:
        raise ValidationFailed("phone", "phone must contain between 8 and 15 digits.")
    return digits


def check_password_policy(password: str) -> None:
    if len(password) < 8:
        raise ValidationFailed("password", "Password must be at least 8 characters.")
    if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise ValidationFailed("password", "Password must be at most 72 bytes.")


def check_role(role: str) -> str:
    if role not in ROLES:
        raise ValidationFailed("role", f"role must be one of: {', '.join(ROLES)}.")
    return role


# ---------------------------------------------------------------------------
# Account operations
# ---------------------------------------------------------------------------


def register_user(
    store: UserStore,
    email: str,
    password: str,
    role: str = "viewer",
    name: Optional[str] = None,
    id_number: Optional[str] = None,
    phone: Optional[str] = None,
) -> User:
    """Validate, hash, and persist a new account.

    Raises ValidationFailed on malformed fields and Conflict when the email or
    id_number already belongs to another account. The pre-check gives the
    common case a clean error; the IntegrityError mapping covers the race
    where two registrations for the same email interleave.
    """
    email = normalize_email(email)
    check_password_policy(password)
    role = check_role(role)
    id_digits, id_type = normalize_id_number(id_number)
    phone_digits = normalize_phone(phone)

    if store.get_by_email(email) is not None:
        raise Conflict()

    new_user = User(
        email=email,
        role=role,
        hashed_password=hash_password(password),
        name=name.strip() if name else None,
        id_number=id_digits,
        id_type=id_type,
        phone=phone_digits,
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError as exc:
        raise Conflict() from exc
    logger.info("User registered (user_id=%s role=%s)", user_id, role)
    created = store.get_by_id(user_id)
    if created is None:
        raise NotFound("User not found after write.")
    return created


def update_password(store: UserStore, user_id: int, new_password: str) -> None:
    """Replace a user's password hash. Raises NotFound if the user is gone."""
    check_password_policy(new_password)
    if not store.update_password(user_id, hash_password(new_password)):
        raise NotFound("User not found.")
    logger.info("Password changed (user_id=%s)", user_id)


def update_email(store: UserStore, user_id: int, new_email: str) -> User:
    """Change a user's login key, re-validating format and uniqueness."""
    email = normalize_email(new_email)
    existing = store.get_by_email(email)
    if existing is not None and existing.id != user_id:
        raise Conflict()
    try:
        updated = store.update_email(user_id, email)
    except IntegrityError as exc:
        raise Conflict() from exc
    if not updated:
        raise NotFound("User not found.")
    logger.info("Login email changed (user_id=%s)", user_id)
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return user
