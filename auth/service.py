"""
auth/service.py -- Registration workflow and authentication.

AccessService orchestrates the store and the authorization engine. It is the
only place that knows the order in which registration checks run:

  1. requested role is one of the four known roles   -> ValidationError
  2. empty system: requested role must be super_admin -> ValidationError
  3. otherwise the creation gate must pass            -> PermissionDenied
  4. email must be unused                             -> DuplicateEmail
  5. password must pass the strength policy           -> WeakPassword
  6. role must resolve in the registry                -> ValidationError  (store)
  7. detail payload must fit the role                 -> ValidationError  (store)
  8. persist                                          -> DuplicateEmail on a lost race

The first failure short-circuits; nothing is written before step 8.

Actions taken by a super_admin are appended to their own registroAcciones
list after the action succeeds.
"""

from __future__ import annotations

import logging
from typing import Any

from auth import policy
from auth.errors import AccountInactive, DuplicateEmail, InvalidCredentials, ValidationError
from auth.models import ROLE_NAMES, SUPER_ADMIN, NewUser, SessionAssertion, User
from auth.store import IdentityStore
from auth.tokens import build_session, burn_password_check, check_password_strength, hash_password, verify_password

logger = logging.getLogger("labaccess.service")


class AccessService:
    """Registration, login and audited user maintenance on top of an IdentityStore."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        actor,
        requested_role: str,
        *,
        email: str,
        password: str,
        name: str,
        document: str,
        phone: str | None = None,
        address: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> User:
        """Create a user of requested_role on behalf of actor (None = anonymous)."""
        if requested_role not in ROLE_NAMES:
            raise ValidationError(f"role must be one of: {', '.join(ROLE_NAMES)}.")

        if self.store.count() == 0:
            if not policy.bootstrap_allows(requested_role):
                raise ValidationError("The first user must be a super_admin.")
            logger.info("Bootstrap: creating the first super_admin")
        else:
            policy.require_create(actor.role_name if actor is not None else None, requested_role)

        if self.store.get_by_email(email) is not None:
            raise DuplicateEmail()

        check_password_strength(password)

        user = self.store.create(
            NewUser(
                email=email,
                name=name,
                document=document,
                role_name=requested_role,
                hashed_password=hash_password(password),
                phone=phone,
                address=address,
                details=details or {},
            )
        )
        self._audit(actor, "crear_usuario", f"{user.id} {user.email} ({user.role_name})")
        return user

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> User:
        """Verify credentials and return the user.

        Unknown email and wrong password both raise InvalidCredentials, and
        both pay for one bcrypt comparison [C1]. Inactivity is reported only
        after the password has been verified, so AccountInactive never
        confirms an address to someone who does not hold its password.
        """
        user = self.store.get_by_email(email)
        if user is None or not user.hashed_password:
            burn_password_check(password)
            raise InvalidCredentials()
        if not verify_password(password, user.hashed_password):
            raise InvalidCredentials()
        if not user.is_active:
            raise AccountInactive()
        return user

    def login(self, email: str, password: str, expire_seconds: int = 0) -> SessionAssertion:
        """Authenticate and return a SessionAssertion with the role's current permissions."""
        user = self.authenticate(email, password)
        session = build_session(user, expire_seconds)
        logger.info("Login: user %s (%s)", user.id, user.role_name)
        return session

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def update_user(self, user_id: int, patch: dict[str, Any], actor) -> User:
        user = self.store.update(user_id, patch, actor)
        self._audit(actor, "editar_usuario", f"{user_id}: {', '.join(sorted(patch))}")
        return user

    def set_user_active(self, user_id: int, active: bool, actor) -> User:
        user = self.store.set_active(user_id, active, actor)
        self._audit(actor, "activar_usuario" if active else "desactivar_usuario", str(user_id))
        return user

    def _audit(self, actor, action: str, detail: str) -> None:
        if actor is not None and actor.role_name == SUPER_ADMIN:
            self.store.record_action(actor.id, action, detail)
