"""
auth/models.py -- Domain dataclasses for identity and access entities.

Pattern: Data class (pure data container, no business logic). Stores and
services do the work; these classes only own the shape of the domain.

A User holds a resolved Role value, never a copied permission list: the
store looks the role up on every read, so a permission change in the
registry is visible on the next read of any user holding that role.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from auth.details import Details

# ---------------------------------------------------------------------------
# Role names
# ---------------------------------------------------------------------------

SUPER_ADMIN = "super_admin"
ADMINISTRADOR = "administrador"
LABORATORISTA = "laboratorista"
CLIENTE = "cliente"

# Top role first. Order is used for listing and seeding.
ROLE_NAMES: tuple[str, ...] = (SUPER_ADMIN, ADMINISTRADOR, LABORATORISTA, CLIENTE)


@dataclass(frozen=True)
class Role:
    """A named category of user with an ordered permission set."""

    name: str
    permissions: tuple[str, ...]
    description: str = ""


@dataclass
class RecoveryToken:
    """Pending credential-recovery state attached to a user.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token); the raw token only
    ever exists in the message sent to the user. expires_at is epoch seconds.
    """

    token_hash: str
    expires_at: float
    attempts: int = 0


@dataclass
class User:
    """A stored identity with its role resolved from the registry.

    hashed_password is a bcrypt digest; plaintext is never stored.
    id is None before the record is written to the database.
    """

    email: str
    name: str
    document: str
    role: Role
    details: Details
    id: int | None = None
    hashed_password: str | None = None
    phone: str | None = None
    address: str | None = None
    is_active: bool = True
    created_at: str | None = None  # ISO 8601, immutable once set
    updated_at: str | None = None  # ISO 8601, stamped on every mutation
    recovery: RecoveryToken | None = None

    @property
    def role_name(self) -> str:
        return self.role.name

    @property
    def permissions(self) -> tuple[str, ...]:
        return self.role.permissions


@dataclass
class NewUser:
    """Registration candidate handed to IdentityStore.create().

    details is the raw role-dependent payload; the store shapes it into the
    role's detail variant and rejects it if required keys are missing.
    """

    email: str
    name: str
    document: str
    role_name: str
    hashed_password: str
    phone: str | None = None
    address: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class UserSummary:
    """Least-privilege projection used for listings: no credential, no details."""

    id: int
    email: str
    name: str
    document: str
    role_name: str
    is_active: bool
    phone: str | None = None
    address: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class SessionAssertion:
    """Signed proof of authentication carried by the client.

    permissions is a snapshot taken at issue time. Revoking a permission in
    the registry does not affect assertions already issued until they expire.
    """

    id: int
    email: str
    name: str
    role_name: str
    permissions: tuple[str, ...]
    expires_at: int  # epoch seconds


@dataclass
class RecoveryTicket:
    """Result of a recovery request, handed to the notifier by the caller.

    registered is False when the email is unknown. The ticket still carries
    a well-formed token so the response shape never reveals which addresses
    exist; callers skip dispatch for unregistered tickets.
    """

    email: str
    token: str
    name: str
    registered: bool = True
