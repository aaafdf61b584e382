"""Brute-force guard for the public signing links.

Failed lookups (bad token, unknown signature) are counted per client in the
``signing_access_attempts`` table. Once a client reaches
``signing_access_max_failures`` inside the window, every signing request from
it is refused with 429 until the window runs out.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.base_models import utcnow
from app.common.errors import Throttled
from app.config import settings
from app.esign.models import SigningAccessAttempt

logger = logging.getLogger(__name__)


def _key(client: Optional[str]) -> str:
    return f"sign:{client or 'unknown'}"


async def _get(db: AsyncSession, key: str) -> Optional[SigningAccessAttempt]:
    result = await db.execute(select(SigningAccessAttempt).where(SigningAccessAttempt.key == key))
    return result.scalar_one_or_none()


async def ensure_not_throttled(db: AsyncSession, client: Optional[str], now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    attempt = await _get(db, _key(client))
    if attempt is None or attempt.window_expires_at <= now:
        return
    if attempt.count >= settings.signing_access_max_failures:
        raise Throttled("Too many invalid signing attempts, try again later")


async def record_failed_access(db: AsyncSession, client: Optional[str], now: Optional[datetime] = None) -> int:
    """Count one failure and commit it, so it survives the failing request."""
    now = now or utcnow()
    key = _key(client)
    attempt = await _get(db, key)
    window = timedelta(minutes=settings.signing_access_window_minutes)

    if attempt is None:
        attempt = SigningAccessAttempt(key=key, count=1, window_expires_at=now + window)
        db.add(attempt)
    elif attempt.window_expires_at <= now:
        attempt.count = 1
        attempt.window_expires_at = now + window
    else:
        attempt.count += 1
    await db.commit()

    if attempt.count == settings.signing_access_max_failures:
        logger.warning("Signing access throttled for %s until %s", key, attempt.window_expires_at.isoformat())
    return attempt.count
