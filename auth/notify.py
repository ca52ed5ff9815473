"""
auth/notify.py -- Recovery message delivery over SMTP (fastapi-mail).

RecoveryMailer is the notification collaborator of the recovery flow. It
turns (address, token, display name) into a reset link and an HTML message.

When MAIL_SERVER / MAIL_USERNAME / MAIL_PASSWORD are not all set, nothing is
sent: the link is logged and send() reports "not_configured". That keeps
local development usable without an SMTP relay.

A transport failure raises NotificationFailed so the API can answer with a
distinct error instead of blaming the recovery flow.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import html
import logging

from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType

from auth.errors import NotificationFailed
from core.config import Settings, get_settings

logger = logging.getLogger("labaccess.notify")


class RecoveryMailer:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def reset_link(self, token: str) -> str:
        return f"{self.settings.frontend_url.rstrip('/')}/reset-password?token={token}"

    def _connection(self) -> ConnectionConfig:
        s = self.settings
        return ConnectionConfig(
            MAIL_USERNAME=s.mail_username,
            MAIL_PASSWORD=s.mail_password,
            MAIL_FROM=s.mail_from or s.mail_username,
            MAIL_FROM_NAME=s.mail_from_name,
            MAIL_PORT=s.mail_port,
            MAIL_SERVER=s.mail_server,
            MAIL_STARTTLS=s.mail_starttls,
            MAIL_SSL_TLS=s.mail_ssl_tls,
            USE_CREDENTIALS=True,
            VALIDATE_CERTS=True,
        )

    async def send(self, address: str, token: str, display_name: str) -> str:
        """Deliver the reset link to address. Returns "sent" or "not_configured"."""
        link = self.reset_link(token)
        if not self.settings.mail_configured:
            logger.warning("Mail not configured. Recovery link for %s: %s", address, link)
            return "not_configured"

        body = f"""
        <div>
          <p>Hola {html.escape(display_name)},</p>
          <p>Recibimos una solicitud para restablecer tu contraseña.</p>
          <p>El enlace es válido por 1 hora y solo puede usarse una vez:</p>
          <p><a href="{html.escape(link)}">Restablecer contraseña</a></p>
          <p>Si no solicitaste el cambio, ignora este correo.</p>
        </div>
        """
        message = MessageSchema(
            subject="Recuperación de contraseña",
            recipients=[address],
            body=body,
            subtype=MessageType.html,
        )
        try:
            await FastMail(self._connection()).send_message(message)
        except Exception as exc:
            logger.exception("Failed sending recovery message to %s", address)
            raise NotificationFailed() from exc
        logger.info("Recovery message sent to %s", address)
        return "sent"
