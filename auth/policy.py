"""
auth/policy.py -- Authorization Engine.

Pure decision functions. Every answer depends only on role names and, for
modification, on whether actor and target are the same identity. Nothing
here touches the database or the clock.

A "principal" is anything with .id, .role_name and .permissions -- both
auth.models.User and auth.models.SessionAssertion qualify, so route code
can pass the decoded session straight in.

Creation (who may provision whom):
  super_admin   -> administrador
  administrador -> laboratorista, cliente
  laboratorista -> nobody
  cliente       -> nobody
  The empty-system bootstrap case is not part of this table; see
  bootstrap_allows().

Modification (who may edit whom):
  anyone        -> themself
  super_admin   -> every user
  administrador -> laboratorista, cliente
  others        -> nobody else
  Role changes additionally require super_admin. Password changes through
  the update path are limited to the owner and super_admin; everyone else
  goes through credential recovery.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auth.errors import PermissionDenied
from auth.models import ADMINISTRADOR, CLIENTE, LABORATORISTA, ROLE_NAMES, SUPER_ADMIN

logger = logging.getLogger("labaccess.policy")

_CREATABLE_BY: dict[str, frozenset[str]] = {
    SUPER_ADMIN: frozenset({ADMINISTRADOR}),
    ADMINISTRADOR: frozenset({LABORATORISTA, CLIENTE}),
}

_MODIFIABLE_BY: dict[str, frozenset[str]] = {
    SUPER_ADMIN: frozenset(ROLE_NAMES),
    ADMINISTRADOR: frozenset({LABORATORISTA, CLIENTE}),
}


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def bootstrap_allows(requested_role: str) -> bool:
    """In an empty system only the top role may be created, by anyone."""
    return requested_role == SUPER_ADMIN


def can_create(actor_role: str | None, requested_role: str) -> bool:
    if actor_role is None:
        return False
    return requested_role in _CREATABLE_BY.get(actor_role, frozenset())


def can_modify(actor, target) -> bool:
    if actor.id == target.id:
        return True
    return target.role_name in _MODIFIABLE_BY.get(actor.role_name, frozenset())


def can_change_role(actor) -> bool:
    return actor.role_name == SUPER_ADMIN


def can_set_credential(actor, target) -> bool:
    return actor.id == target.id or actor.role_name == SUPER_ADMIN


def has_permission(principal, permission: str) -> bool:
    """super_admin is a superuser; everyone else needs the string in their set."""
    if principal.role_name == SUPER_ADMIN:
        return True
    return permission in principal.permissions


def has_any_permission(principal, permissions: Iterable[str]) -> bool:
    return any(has_permission(principal, p) for p in permissions)


# ---------------------------------------------------------------------------
# Enforcing wrappers
#
# Same decisions, but raise PermissionDenied. The reason is logged and kept
# out of the exception detail that reaches the caller.
# ---------------------------------------------------------------------------


def require_create(actor_role: str | None, requested_role: str) -> None:
    if not can_create(actor_role, requested_role):
        logger.info("Creation denied: %s may not create %s", actor_role or "anonymous", requested_role)
        raise PermissionDenied()


def require_modify(actor, target) -> None:
    if not can_modify(actor, target):
        logger.info(
            "Modification denied: user %s (%s) -> user %s (%s)",
            actor.id,
            actor.role_name,
            target.id,
            target.role_name,
        )
        raise PermissionDenied()


def require_role_change(actor) -> None:
    if not can_change_role(actor):
        logger.info("Role change denied for user %s (%s)", actor.id, actor.role_name)
        raise PermissionDenied()


def require_credential_change(actor, target) -> None:
    if not can_set_credential(actor, target):
        logger.info("Credential change denied: user %s -> user %s", actor.id, target.id)
        raise PermissionDenied()


def require_any_permission(principal, *permissions: str) -> None:
    if not has_any_permission(principal, permissions):
        logger.info("Permission check failed for user %s: needs one of %s", principal.id, permissions)
        raise PermissionDenied()
