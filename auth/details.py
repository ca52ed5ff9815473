"""
auth/details.py -- Role-dependent detail payloads as a tagged union.

Each role has its own dataclass listing exactly the keys that are valid for
it. parse_details() is the single entry point that turns a raw mapping into
the right variant; it rejects unknown keys and missing required ones, so
"which fields belong to which role" is decided here and nowhere else.

Wire keys keep their camelCase names (razonSocial, nivelAcceso, ...) because
stored documents and API clients already use them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from auth.errors import ValidationError
from auth.models import ADMINISTRADOR, CLIENTE, LABORATORISTA, SUPER_ADMIN


@dataclass
class SuperAdminDetails:
    codigo_seguridad: str | None = None
    registro_acciones: list[dict[str, Any]] = field(default_factory=list)

    KEYS: ClassVar[dict[str, str]] = {
        "codigoSeguridad": "codigo_seguridad",
        "registroAcciones": "registro_acciones",
    }


@dataclass
class AdministratorDetails:
    nivel_acceso: int = 1

    KEYS: ClassVar[dict[str, str]] = {"nivelAcceso": "nivel_acceso"}


@dataclass
class LabTechnicianDetails:
    especialidad: str = ""

    KEYS: ClassVar[dict[str, str]] = {"especialidad": "especialidad"}


@dataclass
class ClientDetails:
    razon_social: str
    tipo: str = CLIENTE
    historial_solicitudes: list[Any] = field(default_factory=list)

    KEYS: ClassVar[dict[str, str]] = {
        "razonSocial": "razon_social",
        "tipo": "tipo",
        "historialSolicitudes": "historial_solicitudes",
    }


Details = Union[SuperAdminDetails, AdministratorDetails, LabTechnicianDetails, ClientDetails]

_VARIANTS: dict[str, type] = {
    SUPER_ADMIN: SuperAdminDetails,
    ADMINISTRADOR: AdministratorDetails,
    LABORATORISTA: LabTechnicianDetails,
    CLIENTE: ClientDetails,
}


def parse_details(role_name: str, payload: dict[str, Any] | None) -> Details:
    """Build the detail variant for role_name from a raw wire mapping.

    Raises ValidationError for an unknown role, an unknown key, a missing or
    empty razonSocial on a client, or a value of the wrong type.
    """
    variant = _VARIANTS.get(role_name)
    if variant is None:
        raise ValidationError(f"Unknown role '{role_name}'.")
    payload = dict(payload or {})

    unknown = sorted(set(payload) - set(variant.KEYS))
    if unknown:
        raise ValidationError(f"Fields not valid for role '{role_name}': {', '.join(unknown)}.")

    kwargs = {variant.KEYS[k]: v for k, v in payload.items() if v is not None}

    if variant is ClientDetails:
        razon_social = kwargs.get("razon_social")
        if not isinstance(razon_social, str) or not razon_social.strip():
            raise ValidationError("razonSocial is required for clients.")
        kwargs["razon_social"] = razon_social.strip()
        if kwargs.get("tipo", CLIENTE) != CLIENTE:
            raise ValidationError("tipo must be 'cliente' for clients.")

    if variant is AdministratorDetails and "nivel_acceso" in kwargs:
        level = kwargs["nivel_acceso"]
        # bool is an int subclass; reject it explicitly.
        if isinstance(level, bool) or not isinstance(level, int) or level < 1:
            raise ValidationError("nivelAcceso must be a positive integer.")

    for key in ("codigo_seguridad", "especialidad"):
        if key in kwargs and not isinstance(kwargs[key], str):
            raise ValidationError(f"{key} must be a string.")

    for key in ("registro_acciones", "historial_solicitudes"):
        if key in kwargs and not isinstance(kwargs[key], list):
            raise ValidationError(f"{key} must be a list.")

    return variant(**kwargs)


def details_to_dict(details: Details) -> dict[str, Any]:
    """Serialize a detail variant back to its camelCase wire mapping."""
    return {wire: getattr(details, attr) for wire, attr in details.KEYS.items()}
