"""
auth/roles.py -- Role Registry: the canonical role -> permission mapping.

ROLE_SEED below is the ONLY place in the codebase where role permissions are
written down. It is loaded into the `roles` table the first time a store
starts; after that the table is the source of truth and every permission
check goes through RoleRegistry.

Lookup contract:
  permissions_for(name) never raises. An unknown role has no permissions,
      so callers can treat the empty tuple as "denied" without a try/except.
  resolve(name) raises NotFound for an unknown role. The identity store uses
      it when mapping rows so every User carries a full Role value.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Column, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine

from auth.errors import NotFound
from auth.models import ADMINISTRADOR, CLIENTE, LABORATORISTA, ROLE_NAMES, SUPER_ADMIN, Role

logger = logging.getLogger("labaccess.roles")

# ---------------------------------------------------------------------------
# Canonical seed
# ---------------------------------------------------------------------------

ROLE_SEED: tuple[Role, ...] = (
    Role(
        SUPER_ADMIN,
        ("ver_usuarios", "crear_administradores", "desactivar_usuarios"),
        "Top role. Provisions administrators; holds every permission implicitly.",
    ),
    Role(
        ADMINISTRADOR,
        (
            "ver_usuarios",
            "crear_usuarios",
            "editar_usuarios",
            "eliminar_usuarios",
            "gestionar_laboratoristas",
            "gestionar_clientes",
        ),
        "Manages lab technicians and clients.",
    ),
    Role(
        LABORATORISTA,
        ("perfil_propio", "gestionar_pruebas", "ver_resultados", "registro_muestras"),
        "Lab technician. Runs tests and records samples.",
    ),
    Role(
        CLIENTE,
        ("perfil_propio", "ver_resultados", "solicitar_pruebas"),
        "Client organization. Requests tests and reads results.",
    ),
)

# ---------------------------------------------------------------------------
# Schema
#
# metadata is shared with auth/store.py so users.role can reference
# roles.name and both tables are created together.
# ---------------------------------------------------------------------------

metadata = MetaData()

roles_table = Table(
    "roles",
    metadata,
    Column("name", String(30), primary_key=True),
    Column("permissions", Text, nullable=False),  # JSON array, order preserved
    Column("description", Text, nullable=False, server_default=""),
)


class RoleRegistry:
    """Read access to the roles table plus the seed/migration operations.

    Usage:
        registry = RoleRegistry(engine)
        registry.seed()
        registry.permissions_for("cliente")  # ('perfil_propio', ...)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def seed(self) -> int:
        """Insert any seed role missing from the table. Returns rows inserted.

        Existing rows are left untouched so an operator's edits survive a
        restart. Use reset_to_seed() to force the canonical values back.
        """
        inserted = 0
        with self.engine.connect() as conn:
            existing = {row.name for row in conn.execute(select(roles_table.c.name))}
            for role in ROLE_SEED:
                if role.name in existing:
                    continue
                conn.execute(
                    roles_table.insert().values(
                        name=role.name,
                        permissions=json.dumps(list(role.permissions)),
                        description=role.description,
                    )
                )
                inserted += 1
            conn.commit()
        if inserted:
            logger.info("Seeded %d role(s)", inserted)
        return inserted

    def reset_to_seed(self) -> None:
        """Rewrite every seed role's permissions and description from ROLE_SEED."""
        self.seed()
        with self.engine.connect() as conn:
            for role in ROLE_SEED:
                conn.execute(
                    roles_table.update()
                    .where(roles_table.c.name == role.name)
                    .values(permissions=json.dumps(list(role.permissions)), description=role.description)
                )
            conn.commit()
        logger.info("Role permissions reset to the canonical seed")

    def set_permissions(self, name: str, permissions: list[str]) -> None:
        """Replace one role's permission list. Raises NotFound for an unknown role."""
        with self.engine.connect() as conn:
            result = conn.execute(
                roles_table.update()
                .where(roles_table.c.name == name)
                .values(permissions=json.dumps(list(dict.fromkeys(permissions))))
            )
            conn.commit()
        if result.rowcount == 0:
            raise NotFound(f"Role '{name}' does not exist.")

    def resolve(self, name: str) -> Role:
        """Return the full Role for name. Raises NotFound if it is not registered."""
        with self.engine.connect() as conn:
            row = conn.execute(roles_table.select().where(roles_table.c.name == name)).fetchone()
        if row is None:
            raise NotFound(f"Role '{name}' does not exist.")
        return _row_to_role(row)

    def permissions_for(self, name: str) -> tuple[str, ...]:
        """Return the ordered permission set for name, or () for an unknown role."""
        try:
            return self.resolve(name).permissions
        except NotFound:
            return ()

    def list_roles(self) -> list[Role]:
        """Return all registered roles, seed roles first in canonical order."""
        with self.engine.connect() as conn:
            rows = conn.execute(roles_table.select()).fetchall()
        roles = [_row_to_role(r) for r in rows]
        order = {name: i for i, name in enumerate(ROLE_NAMES)}
        return sorted(roles, key=lambda r: (order.get(r.name, len(order)), r.name))


def _row_to_role(row) -> Role:
    return Role(
        name=row.name,
        permissions=tuple(json.loads(row.permissions or "[]")),
        description=row.description or "",
    )
