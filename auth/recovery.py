"""
auth/recovery.py -- Credential Recovery Flow.

Per-user state machine:  NONE -> PENDING -> {CONSUMED, EXPIRED}

  request_recovery()   NONE/PENDING -> PENDING   (new token replaces the old one)
  validate_token()     PENDING -> CONSUMED       (token cleared, owner returned)
  consume_and_set_password()
                       PENDING -> CONSUMED       (password set + token cleared together)
  inspect_token()      PENDING -> PENDING        (counts one attempt)
  clock passes expiry  PENDING -> EXPIRED        (no write; the row just stops matching)

A token is dead once it is cleared, once the clock passes its expiry, or
once its attempt counter reaches the configured maximum. Callers never learn
which of these applied.

This module does not send anything. The caller hands the returned
RecoveryTicket to a notifier, so a transport failure is reported separately
from a token failure.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InvalidOrExpiredToken, PersistenceError
from auth.models import RecoveryTicket, User
from auth.store import IdentityStore, normalize_email
from auth.tokens import check_password_strength, generate_recovery_token, hash_password, hash_recovery_token
from core.config import get_settings

logger = logging.getLogger("labaccess.recovery")


class RecoveryFlow:
    """Issue, inspect, validate and consume single-use recovery tokens.

    clock returns epoch seconds; tests pass a fake one to step past expiry.
    """

    def __init__(
        self,
        store: IdentityStore,
        expire_seconds: int | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.expire_seconds = expire_seconds or settings.recovery_token_expire_seconds
        self.max_attempts = max_attempts or settings.recovery_max_attempts
        self.clock = clock

    def request_recovery(self, email: str) -> RecoveryTicket:
        """Issue a token for email and return what the notifier needs.

        An unknown address gets a ticket of the same shape with a throwaway
        token that is never stored, and registered=False.
        """
        token = generate_recovery_token()
        user = self.store.get_by_email(email)
        if user is None:
            logger.info("Recovery requested for an unregistered address")
            return RecoveryTicket(email=normalize_email(email), token=token, name="", registered=False)

        self.store.set_recovery_token(user.id, hash_recovery_token(token), self.clock() + self.expire_seconds)
        logger.info("Recovery token issued for user %s", user.id)
        return RecoveryTicket(email=user.email, token=token, name=user.name)

    def inspect_token(self, token: str) -> User | None:
        """Check that token is live without consuming it; counts one attempt."""
        return self.store.touch_recovery_token(hash_recovery_token(token), self.clock(), self.max_attempts)

    def validate_token(self, token: str) -> User | None:
        """Consume token and return its owner, or None if it is not live.

        None means "invalid or expired"; callers must not distinguish further.
        """
        user = self.store.take_recovery_token(hash_recovery_token(token), self.clock(), self.max_attempts)
        if user is not None:
            logger.info("Recovery token consumed for user %s", user.id)
        return user

    def consume_and_set_password(self, token: str, new_password: str) -> User:
        """Set a new password using token.

        The strength check runs first and touches nothing, so a weak password
        leaves the token usable. Setting the password and clearing the token
        happen in one conditional write.
        """
        check_password_strength(new_password)
        try:
            user = self.store.consume_recovery_token(
                hash_recovery_token(token),
                hash_password(new_password),
                self.clock(),
                self.max_attempts,
            )
        except SQLAlchemyError as exc:
            logger.exception("Could not persist recovered password")
            raise PersistenceError() from exc
        if user is None:
            raise InvalidOrExpiredToken()
        logger.info("Password reset via recovery token for user %s", user.id)
        return user
