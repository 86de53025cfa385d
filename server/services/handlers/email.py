"""Email node handler using aiosmtplib.

Two credential types are accepted:
- EMAIL_SMTP: value is JSON {host, port, secure, username, password, from}
- EMAIL_GMAIL: name is the Gmail address, value is an app password
"""

from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Dict

import aiosmtplib

from constants import NodeType
from core.config import Settings
from core.logging import get_logger
from services.credentials import CredentialStore
from services.execution.errors import ConfigurationError, NonRetriableError, UpstreamServiceError
from services.execution.models import ExecutionContext
from .common import load_credential, render_text, reporting_status, require

logger = get_logger(__name__)

GMAIL_SMTP_HOST = "smtp.gmail.com"
GMAIL_SMTP_PORT = 465


def _smtp_options(record: Dict[str, Any], credentials: CredentialStore) -> Dict[str, Any]:
    """aiosmtplib.send keyword arguments plus the sender address."""
    if record["type"] == "EMAIL_GMAIL":
        return {
            "hostname": GMAIL_SMTP_HOST,
            "port": GMAIL_SMTP_PORT,
            "username": record["name"],
            "password": credentials.reveal(record),
            "use_tls": True,
            "sender": record["name"],
        }
    if record["type"] == "EMAIL_SMTP":
        smtp = credentials.reveal_json(record)
        if not smtp.get("host"):
            raise ConfigurationError("Email Node: SMTP credential has no host")
        port = int(smtp.get("port") or 587)
        secure = bool(smtp.get("secure", port == 465))
        return {
            "hostname": smtp["host"],
            "port": port,
            "username": smtp.get("username"),
            "password": smtp.get("password"),
            "use_tls": secure,
            "start_tls": False if secure else None,
            "sender": smtp.get("from") or smtp.get("username"),
        }
    raise ConfigurationError(f"Email Node: Unsupported credential type: {record['type']}")


async def handle_email(*, node_type: NodeType, data, node_id: str, user_id: str,
                       context: ExecutionContext, step, publish,
                       credentials: CredentialStore, settings: Settings) -> ExecutionContext:
    async with reporting_status(publish, node_type, node_id):
        variable_name = require(data, "variableName", "Email Node: Variable name is required", node_id)
        credential_id = require(data, "credentialId", "Email Node: Email credential is required", node_id)
        require(data, "to", "Email Node: Recipient email is required", node_id)
        require(data, "subject", "Email Node: Subject is required", node_id)
        require(data, "body", "Email Node: Body is required", node_id)

        to = render_text(data["to"], context)
        subject = render_text(data["subject"], context)
        body = render_text(data["body"], context)

        record = await load_credential(step, credentials, "get-email-credential",
                                       credential_id, user_id, "Email Node", node_id)

        async def send() -> Dict[str, Any]:
            options = _smtp_options(record, credentials)
            sender = options.pop("sender")

            message = EmailMessage()
            message["From"] = sender
            message["To"] = to
            message["Subject"] = subject
            message["Message-ID"] = make_msgid()
            message.set_content(body)
            message.add_alternative(body, subtype="html")

            try:
                errors, response = await aiosmtplib.send(message, timeout=settings.smtp_timeout, **options)
            except aiosmtplib.SMTPAuthenticationError as e:
                raise ConfigurationError(f"Email Node: SMTP authentication failed: {e}") from e
            except aiosmtplib.SMTPRecipientsRefused as e:
                raise NonRetriableError(f"Email Node: Recipients refused: {e}") from e
            except (aiosmtplib.SMTPException, OSError) as e:
                raise UpstreamServiceError(f"Email Node: Email sending failed: {e}") from e

            return {
                "messageId": message["Message-ID"],
                "accepted": [addr.strip() for addr in to.split(",") if addr.strip() not in errors],
                "rejected": sorted(errors),
                "response": response,
            }

        result = await step.run("send-email", send)
        logger.info("Email sent", node_id=node_id, to=to, message_id=result["messageId"])

        return context.with_values(**{variable_name: {
            "emailSent": True,
            "messageId": result["messageId"],
            "to": to,
            "subject": subject,
        }})
