"""
auth/totp.py -- TOTP two-factor engine with single-use recovery codes.

RFC 6238 compatible (Google Authenticator, Authy, Aegis): 6 digits, 30-second
step, HMAC-SHA1, base32 secrets.

State machine per user (see auth.models.TwoFactorState):

    DISABLED --begin_setup--> PENDING_SETUP --confirm_setup--> ENABLED
        ^                          |  ^                           |
        |                          +--+ begin_setup (restart)     |
        +------------------------- disable -----------------------+

Every transition re-reads the user, checks the state it needs, and then asks
UserStore for a conditional update keyed on that state. A transition that
loses a race writes nothing.

Recovery codes: 12 uppercase hex characters grouped XXXX-XXXX-XXXX, stored as
SHA-256 of the normalized form (no dashes/whitespace, uppercase). They are
returned in plaintext exactly once. Consumption is an atomic
"UPDATE ... WHERE used = 0" in the store.

Destructive operations (disable, regenerate_recovery_codes) need both the
password and a second factor, so a stolen access token alone cannot strip the
account's protection.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hashlib
import io
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

import pyotp
import qrcode

from auth.credentials import verify_password
from auth.errors import AlreadyEnabled, InvalidCode, InvalidPassword, NotEnabled, NotFound, SetupNotStarted
from auth.models import TwoFactorState, User
from auth.store import UserStore

logger = logging.getLogger("pyroalert.auth.totp")

_WHITESPACE_OR_DASH = re.compile(r"[\s-]")
_TOTP_DIGITS = 6


@dataclass(frozen=True)
class SetupResult:
    secret: str
    otpauth_uri: str
    qr_image: str  # data:image/png;base64,...


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    recovery_codes_remaining: int
    state: TwoFactorState


# ---------------------------------------------------------------------------
# TOTP primitives
# ---------------------------------------------------------------------------


def generate_totp_secret() -> str:
    """Return a new random base32 TOTP secret (32 characters, 160 bits)."""
    return pyotp.random_base32()


def verify_totp(
    secret: str,
    code: str,
    interval: int = 30,
    valid_window: int = 1,
    for_time: Optional[Union[int, float, datetime]] = None,
) -> bool:
    """Check a 6-digit code against secret, tolerating +/- valid_window steps.

    for_time defaults to now; tests pass explicit timestamps to probe the window.
    pyotp compares codes in constant time.
    """
    if not secret or not code:
        return False
    code = re.sub(r"\s", "", code)
    if len(code) != _TOTP_DIGITS or not code.isdigit():
        return False
    totp = pyotp.TOTP(secret, interval=interval)
    if for_time is None:
        return totp.verify(code, valid_window=valid_window)
    if isinstance(for_time, float):
        for_time = int(for_time)
    return totp.verify(code, for_time=for_time, valid_window=valid_window)


def provisioning_uri(secret: str, email: str, issuer: str, interval: int = 30) -> str:
    """Return the otpauth:// URI an authenticator app scans."""
    return pyotp.TOTP(secret, interval=interval).provisioning_uri(name=email, issuer_name=issuer)


def qr_data_url(text: str) -> str:
    """Render text as a PNG QR code and return it as a data: URL."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


# ---------------------------------------------------------------------------
# Recovery codes
# ---------------------------------------------------------------------------


def generate_recovery_codes(count: int = 10) -> list[str]:
    """Return count fresh codes in XXXX-XXXX-XXXX form (6 random bytes each)."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(6).upper()
        codes.append(f"{raw[0:4]}-{raw[4:8]}-{raw[8:12]}")
    return codes


def hash_recovery_code(code: str) -> str:
    """SHA-256 of the normalized code, so 'abcd-ef01-2345' and 'ABCDEF012345' match."""
    normalized = _WHITESPACE_OR_DASH.sub("", code).upper()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TwoFactorEngine:
    """Drives the per-user 2FA state machine on top of UserStore."""

    def __init__(
        self,
        user_store: UserStore,
        issuer_name: str = "PyroAlert",
        interval: int = 30,
        valid_window: int = 1,
        recovery_code_count: int = 10,
    ) -> None:
        self.users = user_store
        self.issuer_name = issuer_name
        self.interval = interval
        self.valid_window = valid_window
        self.recovery_code_count = recovery_code_count

    def begin_setup(self, user: User) -> SetupResult:
        """Generate a pending secret. Raises AlreadyEnabled once 2FA is active."""
        current = self._reload(user)
        if current.two_factor_state is TwoFactorState.ENABLED:
            raise AlreadyEnabled()
        secret = generate_totp_secret()
        if not self.users.set_pending_secret(current.id, secret):
            # 2FA was enabled between the read and the write.
            raise AlreadyEnabled()
        uri = provisioning_uri(secret, current.email, self.issuer_name, self.interval)
        logger.info("2FA setup started (user_id=%s)", current.id)
        return SetupResult(secret=secret, otpauth_uri=uri, qr_image=qr_data_url(uri))

    def confirm_setup(self, user: User, code: str) -> list[str]:
        """Promote the pending secret after a valid code; return the plaintext recovery codes once."""
        current = self._reload(user)
        state = current.two_factor_state
        if state is TwoFactorState.ENABLED:
            raise AlreadyEnabled()
        if state is not TwoFactorState.PENDING_SETUP:
            raise SetupNotStarted()
        if not verify_totp(current.totp_pending_secret, code, self.interval, self.valid_window):
            raise InvalidCode("Invalid code. Check that your device clock is correct.")

        codes = generate_recovery_codes(self.recovery_code_count)
        hashes = [hash_recovery_code(c) for c in codes]
        if not self.users.activate_two_factor(current.id, current.totp_pending_secret, hashes):
            if self._reload(current).two_factor_state is TwoFactorState.ENABLED:
                raise AlreadyEnabled()
            # Setup was restarted with a new secret; this code belonged to the old one.
            raise InvalidCode()
        logger.info("2FA enabled (user_id=%s)", current.id)
        return codes

    def verify_factor(self, user: User, code: str) -> bool:
        """Accept a current TOTP code or consume one unused recovery code.

        Raises NotEnabled if 2FA is not active. A recovery code authenticates
        at most once, even when concurrent requests present it together.
        """
        current = self._reload(user)
        if current.two_factor_state is not TwoFactorState.ENABLED:
            raise NotEnabled()
        if not code:
            return False
        clean = _WHITESPACE_OR_DASH.sub("", code)
        if len(clean) == _TOTP_DIGITS and clean.isdigit():
            if verify_totp(current.totp_secret, clean, self.interval, self.valid_window):
                return True
        if self.users.consume_recovery_code(current.id, hash_recovery_code(code)):
            logger.info(
                "Recovery code consumed (user_id=%s remaining=%d)",
                current.id,
                self.users.count_unused_recovery_codes(current.id),
            )
            return True
        return False

    def disable(self, user: User, code: str, password: str) -> None:
        """ENABLED -> DISABLED. Requires the password and a valid second factor."""
        current = self._require_password_and_factor(user, code, password)
        if not self.users.disable_two_factor(current.id):
            raise NotEnabled()
        logger.info("2FA disabled (user_id=%s)", current.id)

    def regenerate_recovery_codes(self, user: User, code: str, password: str) -> list[str]:
        """Replace the whole recovery batch. Same gating as disable()."""
        current = self._require_password_and_factor(user, code, password)
        codes = generate_recovery_codes(self.recovery_code_count)
        if not self.users.replace_recovery_codes(current.id, [hash_recovery_code(c) for c in codes]):
            raise NotEnabled()
        logger.info("Recovery codes regenerated (user_id=%s)", current.id)
        return codes

    def status(self, user: User) -> TwoFactorStatus:
        current = self._reload(user)
        enabled = current.two_factor_state is TwoFactorState.ENABLED
        remaining = self.users.count_unused_recovery_codes(current.id) if enabled else 0
        return TwoFactorStatus(enabled=enabled, recovery_codes_remaining=remaining, state=current.two_factor_state)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reload(self, user: User) -> User:
        current = self.users.get_by_id(user.id)
        if current is None:
            raise NotFound("User not found.")
        return current

    def _require_password_and_factor(self, user: User, code: str, password: str) -> User:
        current = self._reload(user)
        if current.two_factor_state is not TwoFactorState.ENABLED:
            raise NotEnabled()
        if not current.hashed_password or not verify_password(password, current.hashed_password):
            raise InvalidPassword()
        if not self.verify_factor(current, code):
            raise InvalidCode()
        return current
