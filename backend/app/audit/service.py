"""Audit-log sink for workflow events."""

import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit.models import AuditLog


def compute_integrity_hash(
    entry_id: str,
    timestamp: str,
    actor_id: Optional[str],
    document_id: Optional[str],
    event_type: str,
    metadata_json: Optional[str],
    previous_hash: Optional[str],
) -> str:
    """Compute SHA-256 hash chain entry for nonrepudiation."""
    payload = (
        f"{entry_id}|{timestamp}|{actor_id or ''}|{document_id or ''}"
        f"|{event_type}|{metadata_json or ''}|{previous_hash or ''}"
    )
    return hashlib.sha256(payload.encode()).hexdigest()


def _canonical_metadata(metadata: Optional[dict]) -> Optional[str]:
    if metadata is None:
        return None
    return json.dumps(metadata, sort_keys=True, separators=(",", ":"), default=str)


async def record_audit_event(
    db: AsyncSession,
    event_type: str,
    document_id: Optional[uuid.UUID] = None,
    actor_id: Optional[uuid.UUID] = None,
    metadata: Optional[dict] = None,
) -> AuditLog:
    """Append an audit entry inside the caller's transaction."""
    prev_result = await db.execute(
        select(AuditLog.integrity_hash, AuditLog.timestamp).order_by(AuditLog.timestamp.desc()).limit(1)
    )
    previous = prev_result.first()
    previous_hash = previous.integrity_hash if previous else None

    entry_id = uuid.uuid4()
    timestamp = datetime.now(timezone.utc)
    # Timestamps order the chain, keep them strictly increasing.
    if previous is not None and timestamp <= previous.timestamp:
        timestamp = previous.timestamp + timedelta(microseconds=1)
    metadata_json = _canonical_metadata(metadata)

    entry = AuditLog(
        id=entry_id,
        actor_id=actor_id,
        document_id=document_id,
        event_type=event_type,
        metadata_json=json.loads(metadata_json) if metadata_json else None,
        previous_hash=previous_hash,
        integrity_hash=compute_integrity_hash(
            str(entry_id),
            timestamp.isoformat(),
            str(actor_id) if actor_id else None,
            str(document_id) if document_id else None,
            event_type,
            metadata_json,
            previous_hash,
        ),
        timestamp=timestamp,
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_document_audit_trail(db: AsyncSession, document_id: uuid.UUID) -> list[AuditLog]:
    result = await db.execute(
        select(AuditLog).where(AuditLog.document_id == document_id).order_by(AuditLog.timestamp.asc())
    )
    return list(result.scalars().all())


def verify_chain(entries: list[AuditLog], linked: bool = True) -> list[str]:
    """Return the ids of entries whose hash does not match their content.

    With ``linked`` every entry must also point at the one before it, which only
    holds for an unbroken run of the global chain.
    """
    broken = []
    previous_hash = None
    for entry in entries:
        expected = compute_integrity_hash(
            str(entry.id),
            entry.timestamp.isoformat(),
            str(entry.actor_id) if entry.actor_id else None,
            str(entry.document_id) if entry.document_id else None,
            entry.event_type,
            _canonical_metadata(entry.metadata_json),
            entry.previous_hash,
        )
        if expected != entry.integrity_hash or (linked and entry.previous_hash != previous_hash):
            broken.append(str(entry.id))
        previous_hash = entry.integrity_hash
    return broken
