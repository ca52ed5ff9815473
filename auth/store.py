"""
auth/store.py -- SQLAlchemy Core persistence layer for identities.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_user / _row_to_summary are the mappers. Route and service code never
touches SQL directly.

Invariants enforced here rather than in callers:
  Email uniqueness is a UNIQUE column on the normalized (lower-cased,
      stripped) address. A concurrent duplicate registration loses at the
      database and surfaces as DuplicateEmail, whatever the in-process
      pre-checks saw.

  Role references are resolved through RoleRegistry on every read, so a User
      always carries the registry's current Role value, never a stale copy.

  Recovery tokens are single-use. Taking or consuming one is a conditional
      UPDATE keyed on the token digest, its expiry and its attempt counter;
      rowcount tells the caller whether it won. Two concurrent validations of
      the same token cannot both see rowcount == 1, in one process or many.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path: auth/labaccess.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    and_,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth import policy
from auth.details import SuperAdminDetails, details_to_dict, parse_details
from auth.errors import DuplicateEmail, NotFound, PersistenceError, ValidationError
from auth.models import SUPER_ADMIN, NewUser, RecoveryToken, User, UserSummary
from auth.roles import RoleRegistry, metadata
from auth.tokens import check_password_strength, hash_password

logger = logging.getLogger("labaccess.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'labaccess.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized
    Column("hashed_password", Text, nullable=False),
    Column("name", String(255), nullable=False),
    Column("document", String(64), nullable=False),
    Column("phone", String(64)),
    Column("address", Text),
    Column("role", String(30), ForeignKey("roles.name"), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object, camelCase keys
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    # Recovery state. At most one live token per user: a new request
    # overwrites these three columns.
    Column("recovery_token_hash", String(64), unique=True),
    Column("recovery_expires_at", Float),  # epoch seconds
    Column("recovery_attempts", Integer, nullable=False, server_default="0"),
)

# Fields a patch may carry. "tipo" is the legacy name for role.
_PATCHABLE = frozenset({"email", "name", "document", "phone", "address", "password", "details", "role", "tipo"})
_IMMUTABLE = frozenset({"id", "hashed_password", "created_at", "updated_at", "is_active"})


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _require_text(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required.")
    return value.strip()


def _optional_text(field: str, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string.")
    return value.strip() or None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for User records, backed by the shared roles/users schema.

    Usage:
        store = IdentityStore()
        user = store.create(NewUser(email="a@b.com", ..., role_name="super_admin"))
        store.get_by_email("A@B.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)
        self.registry = RoleRegistry(self.engine)
        self.registry.seed()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count(self) -> int:
        """Return the number of user records, active or not.

        Used only to detect the empty-system bootstrap condition. Inactive
        users count: deactivating everyone must not reopen bootstrap.
        """
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return self._row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return self._row_to_user(row) if row is not None else None

    def list_active(self) -> list[UserSummary]:
        """Return active users ordered by email, without credentials or details."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(
                    _users.c.id,
                    _users.c.email,
                    _users.c.name,
                    _users.c.document,
                    _users.c.phone,
                    _users.c.address,
                    _users.c.role,
                    _users.c.is_active,
                    _users.c.created_at,
                )
                .where(_users.c.is_active == 1)
                .order_by(_users.c.email)
            ).fetchall()
        return [_row_to_summary(r) for r in rows]

    def count_active_super_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == SUPER_ADMIN) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, candidate: NewUser) -> User:
        """Validate and insert a new user; return the stored record.

        Raises ValidationError for missing fields, an unregistered role or a
        detail payload that does not fit the role, and DuplicateEmail when
        the normalized address already exists.
        """
        email = normalize_email(candidate.email)
        if "@" not in email:
            raise ValidationError("A valid email is required.")
        name = _require_text("name", candidate.name)
        document = _require_text("document", candidate.document)

        try:
            role = self.registry.resolve(candidate.role_name)
        except NotFound as exc:
            raise ValidationError(f"Unknown role '{candidate.role_name}'.") from exc
        details = parse_details(role.name, candidate.details)

        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        email=email,
                        hashed_password=candidate.hashed_password,
                        name=name,
                        document=document,
                        phone=_optional_text("phone", candidate.phone),
                        address=_optional_text("address", candidate.address),
                        role=role.name,
                        is_active=1,
                        details=json.dumps(details_to_dict(details)),
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
                user_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DuplicateEmail() from exc

        logger.info("Created user %s with role %s", user_id, role.name)
        return self._reload(user_id)

    def update(self, user_id: int, patch: dict[str, Any], acting) -> User:
        """Apply a partial update on behalf of acting; return the updated user.

        Gates, in order: the target must exist (NotFound); acting must pass
        the modification gate (PermissionDenied); a role change needs the top
        role and a password change needs self or the top role
        (PermissionDenied); every field must be valid (ValidationError,
        DuplicateEmail, WeakPassword). Every accepted patch stamps updated_at.
        """
        target = self.get_by_id(user_id)
        if target is None:
            raise NotFound("User not found.")
        policy.require_modify(acting, target)

        patch = dict(patch)
        forbidden = sorted(set(patch) & _IMMUTABLE)
        if forbidden:
            raise ValidationError(f"Fields cannot be changed: {', '.join(forbidden)}.")
        unknown = sorted(set(patch) - _PATCHABLE)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(unknown)}.")
        if not patch:
            raise ValidationError("No fields to update.")

        values: dict[str, Any] = {}
        role_name = target.role_name

        requested_role = _merge_role_fields(patch.pop("role", None), patch.pop("tipo", None))
        if requested_role is not None:
            policy.require_role_change(acting)
            try:
                role_name = self.registry.resolve(requested_role).name
            except NotFound as exc:
                raise ValidationError(f"Unknown role '{requested_role}'.") from exc
            values["role"] = role_name
            if role_name != target.role_name:
                self._guard_last_super_admin(target)

        if "password" in patch:
            policy.require_credential_change(acting, target)
            password = patch.pop("password")
            if not isinstance(password, str):
                raise ValidationError("password must be a string.")
            check_password_strength(password)
            values["hashed_password"] = hash_password(password)

        if "email" in patch:
            email = normalize_email(patch.pop("email"))
            if "@" not in email:
                raise ValidationError("A valid email is required.")
            if email != target.email and self.get_by_email(email) is not None:
                raise DuplicateEmail()
            values["email"] = email

        for field in ("name", "document"):
            if field in patch:
                values[field] = _require_text(field, patch.pop(field))
        for field in ("phone", "address"):
            if field in patch:
                values[field] = _optional_text(field, patch.pop(field))

        raw_details = patch.pop("details", None)
        if raw_details is not None and not isinstance(raw_details, dict):
            raise ValidationError("details must be an object.")
        if raw_details and "registroAcciones" in raw_details:
            # Append-only through record_action().
            raise ValidationError("registroAcciones cannot be changed.")
        if role_name != target.role_name:
            # Details of the previous role do not carry over.
            values["details"] = json.dumps(details_to_dict(parse_details(role_name, raw_details)))
        elif raw_details is not None:
            merged = details_to_dict(target.details)
            merged.update(raw_details)
            values["details"] = json.dumps(details_to_dict(parse_details(role_name, merged)))

        values["updated_at"] = _now_iso()
        try:
            with self.engine.connect() as conn:
                conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateEmail() from exc

        changed = sorted(k for k in values if k not in ("updated_at", "hashed_password"))
        if "hashed_password" in values:
            changed.append("password")
        logger.info("User %s updated by %s: %s", user_id, acting.id, ", ".join(changed))
        return self._reload(user_id)

    def set_active(self, user_id: int, active: bool, acting) -> User:
        """Activate or deactivate a user (logical delete). Returns the updated user.

        Refuses to deactivate the last active super_admin: nobody could
        provision or reactivate accounts afterwards.
        """
        target = self.get_by_id(user_id)
        if target is None:
            raise NotFound("User not found.")
        policy.require_modify(acting, target)

        if not active:
            self._guard_last_super_admin(target)

        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(is_active=1 if active else 0, updated_at=_now_iso())
            )
            conn.commit()
        logger.info("User %s %s by %s", user_id, "activated" if active else "deactivated", acting.id)
        return self._reload(user_id)

    def _guard_last_super_admin(self, target: User) -> None:
        """Refuse to remove the last active super_admin, by deactivation or demotion."""
        if target.is_active and target.role_name == SUPER_ADMIN and self.count_active_super_admins() <= 1:
            raise ValidationError("Cannot remove the last active super_admin.")

    def record_action(self, user_id: int, action: str, detail: str = "") -> None:
        """Append an entry to a super_admin's registroAcciones list.

        Plain read-append-write; concurrent appends by the same admin may
        drop one. No-op for users whose details are not the super_admin
        variant.
        """
        user = self.get_by_id(user_id)
        if user is None or not isinstance(user.details, SuperAdminDetails):
            return
        user.details.registro_acciones.append({"accion": action, "fecha": _now_iso(), "detalles": detail})
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(details=json.dumps(details_to_dict(user.details)), updated_at=_now_iso())
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Recovery tokens
    # ------------------------------------------------------------------

    def set_recovery_token(self, user_id: int, token_hash: str, expires_at: float) -> None:
        """Store a new pending token for user_id, replacing any previous one."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(recovery_token_hash=token_hash, recovery_expires_at=expires_at, recovery_attempts=0)
            )
            conn.commit()

    def take_recovery_token(self, token_hash: str, now: float, max_attempts: int) -> User | None:
        """Clear a live token and return its owner; None if no live token matched."""
        return self._claim_token(
            token_hash,
            now,
            max_attempts,
            recovery_token_hash=None,
            recovery_expires_at=None,
            recovery_attempts=0,
        )

    def consume_recovery_token(self, token_hash: str, new_hashed_password: str, now: float, max_attempts: int) -> User | None:
        """Set a new password and clear the token in one conditional write."""
        return self._claim_token(
            token_hash,
            now,
            max_attempts,
            hashed_password=new_hashed_password,
            recovery_token_hash=None,
            recovery_expires_at=None,
            recovery_attempts=0,
            updated_at=_now_iso(),
        )

    def touch_recovery_token(self, token_hash: str, now: float, max_attempts: int) -> User | None:
        """Count one attempt against a live token; return its owner, or None."""
        return self._claim_token(
            token_hash,
            now,
            max_attempts,
            recovery_attempts=_users.c.recovery_attempts + 1,
        )

    def _claim_token(self, token_hash: str, now: float, max_attempts: int, **values) -> User | None:
        live = and_(
            _users.c.recovery_token_hash == token_hash,
            _users.c.recovery_expires_at > now,
            _users.c.recovery_attempts < max_attempts,
        )
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(live)).fetchone()
        if row is None:
            return None
        # Separate transaction: the write re-checks liveness, so whichever
        # caller's UPDATE lands first wins and every other one sees rowcount 0.
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(and_(_users.c.id == row.id, live)).values(**values))
            conn.commit()
        if result.rowcount != 1:
            return None
        return self._reload(row.id)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _reload(self, user_id: int) -> User:
        user = self.get_by_id(user_id)
        if user is None:
            raise PersistenceError(f"User {user_id} not found after write.")
        return user

    def _row_to_user(self, row) -> User:
        try:
            role = self.registry.resolve(row.role)
        except NotFound as exc:
            logger.error("User %s references unregistered role %r", row.id, row.role)
            raise PersistenceError(f"User {row.id} references an unregistered role.") from exc
        recovery = None
        if row.recovery_token_hash:
            recovery = RecoveryToken(
                token_hash=row.recovery_token_hash,
                expires_at=row.recovery_expires_at or 0.0,
                attempts=row.recovery_attempts or 0,
            )
        return User(
            id=row.id,
            email=row.email,
            hashed_password=row.hashed_password,
            name=row.name,
            document=row.document,
            phone=row.phone,
            address=row.address,
            role=role,
            is_active=bool(row.is_active),
            details=parse_details(role.name, json.loads(row.details or "{}")),
            created_at=row.created_at,
            updated_at=row.updated_at,
            recovery=recovery,
        )


def _merge_role_fields(role: Any, tipo: Any) -> str | None:
    if role is not None and tipo is not None and role != tipo:
        raise ValidationError("role and tipo disagree.")
    value = role if role is not None else tipo
    if value is not None and not isinstance(value, str):
        raise ValidationError("role must be a string.")
    return value


def _row_to_summary(row) -> UserSummary:
    return UserSummary(
        id=row.id,
        email=row.email,
        name=row.name,
        document=row.document,
        phone=row.phone,
        address=row.address,
        role_name=row.role,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )
