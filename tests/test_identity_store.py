"""
tests/test_identity_store.py -- Unit tests for auth/store.py (IdentityStore).

Covers:
  - create(): normalization, duplicate email (case-insensitive), unknown role,
    per-role detail validation
  - lookups and the active-user listing projection
  - update(): modification gate, immutable fields, role change gate,
    credential gate, detail merging, updated_at stamping
  - set_active(): gate and the last-super_admin guard
  - record_action(): audit trail on super_admin details
"""

from __future__ import annotations

import pytest

from auth.details import ClientDetails, LabTechnicianDetails, SuperAdminDetails
from auth.errors import DuplicateEmail, NotFound, PermissionDenied, ValidationError, WeakPassword
from auth.models import ADMINISTRADOR, CLIENTE, LABORATORISTA, SUPER_ADMIN, NewUser
from auth.tokens import verify_password

from conftest import PASSWORD, PASSWORD_HASH


def _candidate(**overrides) -> NewUser:
    fields = {
        "email": "Nuevo@Lab.com ",
        "name": "Nuevo Usuario",
        "document": "55555",
        "role_name": LABORATORISTA,
        "hashed_password": PASSWORD_HASH,
    }
    fields.update(overrides)
    return NewUser(**fields)


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


def test_create_normalizes_email_and_resolves_role(store):
    user = store.create(_candidate())
    assert user.id is not None
    assert user.email == "nuevo@lab.com"
    assert user.role_name == LABORATORISTA
    assert user.permissions == store.registry.permissions_for(LABORATORISTA)
    assert user.is_active is True
    assert user.created_at
    assert user.updated_at is None
    assert isinstance(user.details, LabTechnicianDetails)


def test_create_duplicate_email_case_insensitive(store):
    store.create(_candidate())
    with pytest.raises(DuplicateEmail):
        store.create(_candidate(email="NUEVO@lab.COM"))
    assert store.count() == 1


def test_create_unknown_role_is_validation_error(store):
    with pytest.raises(ValidationError):
        store.create(_candidate(role_name="auditor"))
    assert store.count() == 0


def test_create_client_without_razon_social_fails(store):
    with pytest.raises(ValidationError, match="razonSocial"):
        store.create(_candidate(role_name=CLIENTE))
    assert store.count() == 0


def test_create_client_with_razon_social(store):
    user = store.create(_candidate(role_name=CLIENTE, details={"razonSocial": "Acme"}))
    assert isinstance(user.details, ClientDetails)
    assert user.details.razon_social == "Acme"


@pytest.mark.parametrize("field", ["name", "document"])
def test_create_requires_text_fields(store, field):
    with pytest.raises(ValidationError):
        store.create(_candidate(**{field: "  "}))


def test_create_rejects_malformed_email(store):
    with pytest.raises(ValidationError):
        store.create(_candidate(email="not-an-email"))


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def test_get_by_email_is_case_insensitive(store, people):
    found = store.get_by_email("  ROOT@Lab.com")
    assert found is not None
    assert found.id == people[SUPER_ADMIN].id


def test_get_unknown_returns_none(store):
    assert store.get_by_email("ghost@lab.com") is None
    assert store.get_by_id(999) is None


def test_list_active_excludes_inactive(store, people):
    root = people[SUPER_ADMIN]
    store.set_active(people[CLIENTE].id, False, root)
    emails = [s.email for s in store.list_active()]
    assert "client@acme.com" not in emails
    assert emails == sorted(emails)
    assert len(emails) == 3


def test_list_active_projection_has_no_credentials(store, people):
    summary = store.list_active()[0]
    assert not hasattr(summary, "hashed_password")
    assert not hasattr(summary, "details")


def test_count_includes_inactive_users(store, people):
    store.set_active(people[CLIENTE].id, False, people[SUPER_ADMIN])
    assert store.count() == 4


def test_ping(store):
    assert store.ping() is True


# ---------------------------------------------------------------------------
# update
# ---------------------------------------------------------------------------


def test_update_unknown_user_is_not_found(store, people):
    with pytest.raises(NotFound):
        store.update(999, {"name": "X"}, people[SUPER_ADMIN])


def test_self_update_allowed(store, people):
    client = people[CLIENTE]
    updated = store.update(client.id, {"phone": "555-0101"}, client)
    assert updated.phone == "555-0101"


def test_lab_cannot_modify_client(store, people):
    with pytest.raises(PermissionDenied):
        store.update(people[CLIENTE].id, {"name": "Hacked"}, people[LABORATORISTA])
    assert store.get_by_id(people[CLIENTE].id).name != "Hacked"


def test_admin_modifies_lab_technician(store, people):
    tech = people[LABORATORISTA]
    updated = store.update(tech.id, {"name": "Ana Perez"}, people[ADMINISTRADOR])
    assert updated.name == "Ana Perez"


def test_admin_cannot_modify_super_admin(store, people):
    with pytest.raises(PermissionDenied):
        store.update(people[SUPER_ADMIN].id, {"name": "X"}, people[ADMINISTRADOR])


def test_admin_cannot_modify_other_admin(store, people, make_user):
    other = make_user(ADMINISTRADOR, "admin2@lab.com")
    with pytest.raises(PermissionDenied):
        store.update(other.id, {"name": "X"}, people[ADMINISTRADOR])


def test_super_admin_modifies_anyone(store, people, make_user):
    other_root = make_user(SUPER_ADMIN, "root2@lab.com")
    updated = store.update(other_root.id, {"name": "Segundo"}, people[SUPER_ADMIN])
    assert updated.name == "Segundo"


@pytest.mark.parametrize("field", ["id", "hashed_password", "created_at", "is_active"])
def test_immutable_fields_rejected(store, people, field):
    root = people[SUPER_ADMIN]
    with pytest.raises(ValidationError):
        store.update(people[CLIENTE].id, {field: "x"}, root)


def test_unknown_fields_rejected(store, people):
    with pytest.raises(ValidationError):
        store.update(people[CLIENTE].id, {"nickname": "x"}, people[CLIENTE])


def test_empty_patch_rejected(store, people):
    with pytest.raises(ValidationError):
        store.update(people[CLIENTE].id, {}, people[CLIENTE])


def test_admin_cannot_change_role_even_of_lab(store, people):
    with pytest.raises(PermissionDenied):
        store.update(people[LABORATORISTA].id, {"role": CLIENTE}, people[ADMINISTRADOR])
    assert store.get_by_id(people[LABORATORISTA].id).role_name == LABORATORISTA


def test_self_role_escalation_denied(store, people):
    client = people[CLIENTE]
    with pytest.raises(PermissionDenied):
        store.update(client.id, {"tipo": SUPER_ADMIN}, client)


def test_super_admin_changes_role_and_details_reset(store, people):
    tech = people[LABORATORISTA]
    updated = store.update(tech.id, {"role": CLIENTE, "details": {"razonSocial": "Nueva S.A."}}, people[SUPER_ADMIN])
    assert updated.role_name == CLIENTE
    assert updated.permissions == store.registry.permissions_for(CLIENTE)
    assert isinstance(updated.details, ClientDetails)


def test_role_change_to_client_without_razon_social_fails(store, people):
    with pytest.raises(ValidationError):
        store.update(people[LABORATORISTA].id, {"role": CLIENTE}, people[SUPER_ADMIN])


def test_role_and_tipo_must_agree(store, people):
    with pytest.raises(ValidationError):
        store.update(people[LABORATORISTA].id, {"role": CLIENTE, "tipo": ADMINISTRADOR}, people[SUPER_ADMIN])


def test_role_change_to_unknown_role(store, people):
    with pytest.raises(ValidationError):
        store.update(people[LABORATORISTA].id, {"role": "auditor"}, people[SUPER_ADMIN])


def test_details_merge_keeps_existing_keys(store, people):
    client = people[CLIENTE]
    updated = store.update(client.id, {"details": {"historialSolicitudes": ["S-1"]}}, client)
    assert updated.details.razon_social == "Laboratorios Acme S.A."
    assert updated.details.historial_solicitudes == ["S-1"]


def test_details_for_wrong_role_rejected(store, people):
    tech = people[LABORATORISTA]
    with pytest.raises(ValidationError):
        store.update(tech.id, {"details": {"razonSocial": "X"}}, tech)


def test_update_stamps_updated_at_and_keeps_created_at(store, people):
    client = people[CLIENTE]
    updated = store.update(client.id, {"address": "Calle 1"}, client)
    assert updated.created_at == client.created_at
    assert updated.updated_at is not None


def test_self_password_change(store, people):
    client = people[CLIENTE]
    store.update(client.id, {"password": "N3w-Secret!"}, client)
    reloaded = store.get_by_id(client.id)
    assert verify_password("N3w-Secret!", reloaded.hashed_password)
    assert not verify_password(PASSWORD, reloaded.hashed_password)


def test_admin_cannot_set_password_of_client(store, people):
    with pytest.raises(PermissionDenied):
        store.update(people[CLIENTE].id, {"password": "N3w-Secret!"}, people[ADMINISTRADOR])


def test_password_change_enforces_strength(store, people):
    client = people[CLIENTE]
    with pytest.raises(WeakPassword):
        store.update(client.id, {"password": "short"}, client)


def test_password_change_over_bcrypt_limit_rejected(store, people):
    client = people[CLIENTE]
    with pytest.raises(ValidationError):
        store.update(client.id, {"password": "Aa1!" + "é" * 60}, client)
    assert verify_password(PASSWORD, store.get_by_id(client.id).hashed_password)


def test_email_change_to_taken_address(store, people):
    client = people[CLIENTE]
    with pytest.raises(DuplicateEmail):
        store.update(client.id, {"email": "TECH@lab.com"}, client)


def test_email_change_normalized(store, people):
    client = people[CLIENTE]
    updated = store.update(client.id, {"email": " Compras@Acme.com"}, client)
    assert updated.email == "compras@acme.com"


def test_name_cannot_be_blanked(store, people):
    client = people[CLIENTE]
    with pytest.raises(ValidationError):
        store.update(client.id, {"name": "  "}, client)


# ---------------------------------------------------------------------------
# set_active
# ---------------------------------------------------------------------------


def test_deactivate_and_reactivate(store, people):
    root = people[SUPER_ADMIN]
    client_id = people[CLIENTE].id
    assert store.set_active(client_id, False, root).is_active is False
    assert store.set_active(client_id, True, root).is_active is True


def test_set_active_respects_modification_gate(store, people):
    with pytest.raises(PermissionDenied):
        store.set_active(people[SUPER_ADMIN].id, False, people[ADMINISTRADOR])


def test_set_active_unknown_user(store, people):
    with pytest.raises(NotFound):
        store.set_active(999, False, people[SUPER_ADMIN])


def test_last_super_admin_cannot_be_deactivated(store, people):
    root = people[SUPER_ADMIN]
    with pytest.raises(ValidationError):
        store.set_active(root.id, False, root)
    assert store.get_by_id(root.id).is_active is True


def test_last_super_admin_cannot_demote_themself(store, people):
    root = people[SUPER_ADMIN]
    with pytest.raises(ValidationError):
        store.update(root.id, {"role": ADMINISTRADOR}, root)
    assert store.get_by_id(root.id).role_name == SUPER_ADMIN
    assert store.count_active_super_admins() == 1


def test_super_admin_demoted_when_another_remains(store, people, make_user):
    root = people[SUPER_ADMIN]
    other = make_user(SUPER_ADMIN, "root2@lab.com")
    assert store.update(other.id, {"role": ADMINISTRADOR}, root).role_name == ADMINISTRADOR
    assert store.count_active_super_admins() == 1


def test_super_admin_deactivated_when_another_remains(store, people, make_user):
    root = people[SUPER_ADMIN]
    other = make_user(SUPER_ADMIN, "root2@lab.com")
    assert store.set_active(other.id, False, root).is_active is False
    assert store.count_active_super_admins() == 1


# ---------------------------------------------------------------------------
# record_action
# ---------------------------------------------------------------------------


def test_record_action_appends_to_super_admin_details(store, people):
    root = people[SUPER_ADMIN]
    store.record_action(root.id, "crear_usuario", "42")
    store.record_action(root.id, "desactivar_usuario", "43")
    details = store.get_by_id(root.id).details
    assert isinstance(details, SuperAdminDetails)
    assert details.codigo_seguridad == "s3cr3t"
    assert [e["accion"] for e in details.registro_acciones] == ["crear_usuario", "desactivar_usuario"]
    assert details.registro_acciones[0]["detalles"] == "42"
    assert details.registro_acciones[0]["fecha"]


def test_action_log_cannot_be_rewritten_by_patch(store, people):
    root = people[SUPER_ADMIN]
    store.record_action(root.id, "crear_usuario", "42")
    with pytest.raises(ValidationError):
        store.update(root.id, {"details": {"registroAcciones": []}}, root)
    entries = store.get_by_id(root.id).details.registro_acciones
    assert [e["accion"] for e in entries] == ["crear_usuario"]


def test_super_admin_may_still_patch_security_code(store, people):
    root = people[SUPER_ADMIN]
    store.record_action(root.id, "crear_usuario", "42")
    updated = store.update(root.id, {"details": {"codigoSeguridad": "n3w"}}, root)
    assert updated.details.codigo_seguridad == "n3w"
    assert len(updated.details.registro_acciones) == 1


def test_record_action_ignores_other_roles(store, people):
    client = people[CLIENTE]
    store.record_action(client.id, "crear_usuario", "x")
    assert store.get_by_id(client.id).details == client.details
