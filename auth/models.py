"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, the token issuer, and the 2FA engine do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

ROLES = ("admin", "operator", "viewer")


class TwoFactorState(str, Enum):
    """Per-user 2FA state, derived from the stored secret slots."""

    DISABLED = "disabled"
    PENDING_SETUP = "pending_setup"
    ENABLED = "enabled"


@dataclass
class User:
    """Represents an account in PyroAlert.

    email is the login key: stored lowercased and trimmed, unique.

    Two TOTP slots exist. totp_pending_secret holds a secret awaiting its first
    confirmed code; totp_secret holds the confirmed secret in use. A pending
    secret is never accepted for login.

    id_type is derived from id_number ("CPF" for 11 digits, "CNPJ" for 14).
    """

    email: str
    role: str = "viewer"  # "admin", "operator", "viewer"
    id: Optional[int] = None
    hashed_password: Optional[str] = None
    name: Optional[str] = None
    id_number: Optional[str] = None
    id_type: Optional[str] = None
    phone: Optional[str] = None
    totp_secret: Optional[str] = None
    totp_pending_secret: Optional[str] = None
    two_factor_enabled: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login: Optional[str] = None
    is_active: bool = True

    @property
    def two_factor_state(self) -> TwoFactorState:
        if self.two_factor_enabled:
            return TwoFactorState.ENABLED
        if self.totp_pending_secret:
            return TwoFactorState.PENDING_SETUP
        return TwoFactorState.DISABLED


@dataclass
class RecoveryCode:
    """One single-use fallback credential from a user's recovery batch.

    Only the SHA-256 of the normalized code is stored. The plaintext is shown
    once when the batch is generated and is unrecoverable afterwards.
    """

    user_id: int
    code_hash: str
    used: bool = False
    used_at: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None


@dataclass
class RefreshToken:
    """A long-lived opaque credential exchanged for new access tokens.

    token_hash is SHA-256 of the plaintext; the plaintext is returned once by
    issue()/rotate() and never persisted.

    family_id groups every token descended from one password grant. Rotation
    keeps the family and links the successor via parent_id, so a replayed
    ancestor can revoke the whole chain.

    user is populated by RefreshTokenStore.verify() when a user store is
    attached; it is never persisted.
    """

    user_id: int
    token_hash: str
    family_id: str
    expires_at: str
    scope: list[str] = field(default_factory=list)
    id: Optional[int] = None
    parent_id: Optional[int] = None
    revoked: bool = False
    revoked_at: Optional[str] = None
    client_id: str = "default"
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[str] = None
    user: Optional[User] = None
