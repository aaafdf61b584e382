import logging

import httpx

from app.celery_app import celery
from app.config import settings

logger = logging.getLogger(__name__)


@celery.task(
    name="notifications.send_email",
    bind=True,
    max_retries=3,
    default_retry_delay=5,
)
def send_email(self, to: str, subject: str, text: str):
    if not settings.email_api_key:
        logger.warning("EMAIL_API_KEY not set, skipping email to %s: %r", to, subject)
        return

    try:
        with httpx.Client(timeout=10) as client:
            resp = client.post(
                settings.email_api_url,
                json={"from": settings.email_from, "to": [to], "subject": subject, "text": text},
                headers={"Authorization": f"Bearer {settings.email_api_key}"},
            )
            resp.raise_for_status()

        logger.info("Email sent to %s (status %d)", to, resp.status_code)
    except Exception as exc:
        logger.error("Email delivery to %s failed: %s", to, exc)
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)
