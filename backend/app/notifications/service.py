"""Outbound email collaborator.

Rendering is not done here: each message is a short plain-text body handed to
the ``notifications.send_email`` Celery task, which talks to the mail API.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol

from app.config import settings

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send_signature_request_email(
        self,
        *,
        to: str,
        recipient_name: str,
        sender_name: str,
        document_title: str,
        signing_url: str,
        expires_at: datetime,
        message: Optional[str] = None,
    ) -> None: ...

    async def send_reminder_email(
        self,
        *,
        to: str,
        recipient_name: str,
        sender_name: str,
        document_title: str,
        signing_url: str,
        expires_at: datetime,
    ) -> None: ...

    async def send_expiration_notice_email(
        self,
        *,
        to: str,
        recipient_name: str,
        document_title: str,
        expired_at: datetime,
        sender_email: str,
    ) -> None: ...

    async def send_document_completed_email(
        self,
        *,
        to: str,
        recipient_name: str,
        document_title: str,
        completed_at: datetime,
        total_signers: int,
        download_url: str,
    ) -> None: ...

    async def send_signature_declined_email(
        self,
        *,
        to: str,
        recipient_name: str,
        document_title: str,
        signer_name: str,
        signer_email: str,
        reason: Optional[str],
        document_url: str,
    ) -> None: ...


class CeleryEmailSender:
    """Queues emails on the Celery broker. Raises if the broker is unreachable."""

    def _enqueue(self, to: str, subject: str, text: str) -> None:
        from app.notifications.tasks import send_email

        send_email.delay(to, subject, text)

    async def send_signature_request_email(
        self, *, to, recipient_name, sender_name, document_title, signing_url, expires_at, message=None
    ) -> None:
        lines = [
            f"Hi {recipient_name},",
            "",
            f"{sender_name} sent you \"{document_title}\" to sign.",
        ]
        if message:
            lines += ["", message]
        lines += ["", f"Sign here: {signing_url}", f"This link expires on {expires_at:%Y-%m-%d %H:%M} UTC."]
        self._enqueue(to, f"{sender_name} sent you a document to sign", "\n".join(lines))

    async def send_reminder_email(
        self, *, to, recipient_name, sender_name, document_title, signing_url, expires_at
    ) -> None:
        text = (
            f"Hi {recipient_name},\n\n{sender_name} is still waiting for your signature on "
            f"\"{document_title}\".\n\nSign here: {signing_url}\n"
            f"The request expires on {expires_at:%Y-%m-%d %H:%M} UTC."
        )
        self._enqueue(to, f"Reminder: \"{document_title}\" needs your signature", text)

    async def send_expiration_notice_email(
        self, *, to, recipient_name, document_title, expired_at, sender_email
    ) -> None:
        text = (
            f"Hi {recipient_name},\n\nThe signing link for \"{document_title}\" expired on "
            f"{expired_at:%Y-%m-%d %H:%M} UTC.\nContact {sender_email} if you still need to sign."
        )
        self._enqueue(to, f"Signing link for \"{document_title}\" has expired", text)

    async def send_document_completed_email(
        self, *, to, recipient_name, document_title, completed_at, total_signers, download_url
    ) -> None:
        text = (
            f"Hi {recipient_name},\n\nAll {total_signers} signer(s) have signed \"{document_title}\" "
            f"({completed_at:%Y-%m-%d %H:%M} UTC).\n\nView it here: {download_url}"
        )
        self._enqueue(to, f"\"{document_title}\" has been fully signed", text)

    async def send_signature_declined_email(
        self, *, to, recipient_name, document_title, signer_name, signer_email, reason, document_url
    ) -> None:
        text = f"Hi {recipient_name},\n\n{signer_name} ({signer_email}) declined to sign \"{document_title}\"."
        if reason:
            text += f"\nReason: {reason}"
        text += f"\n\nDocument: {document_url}"
        self._enqueue(to, f"{signer_name} declined to sign \"{document_title}\"", text)


_email_sender: EmailSender = CeleryEmailSender()


def get_email_sender() -> EmailSender:
    return _email_sender


async def send_quietly(send: Callable[..., Awaitable[None]], **kwargs) -> bool:
    """Fire a notification whose failure must not reach the caller."""
    try:
        await send(**kwargs)
        return True
    except Exception:
        logger.exception("Failed to send %s to %s", getattr(send, "__name__", "email"), kwargs.get("to"))
        return False


def signing_url(token: str) -> str:
    return f"{settings.app_url}/sign/{token}"


def document_url(document_id) -> str:
    return f"{settings.app_url}/documents/{document_id}"
