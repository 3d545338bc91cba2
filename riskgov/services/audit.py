"""
Audit Trail Service.

Append-only, per-tenant hash chain. Each entry's hash covers its content
and the previous entry's hash, so any edit or removal breaks the chain.
"""

import hashlib
import json
import uuid
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from riskgov.db.models import AuditEvent

logger = structlog.get_logger(__name__)

# Retries after losing the (tenant_id, sequence) race to a concurrent writer
_APPEND_ATTEMPTS = 5


def _compute_entry_hash(
    tenant_id: str,
    sequence: int,
    action: str,
    resource_type: str,
    resource_id: str,
    before_state: Optional[dict],
    after_state: Optional[dict],
    created_at: str,
    previous_hash: str,
) -> str:
    """SHA-256 over the entry content and the previous hash."""
    states = json.dumps([before_state, after_state], sort_keys=True, default=str)
    payload = f"{tenant_id}|{sequence}|{action}|{resource_type}|{resource_id}|{states}|{created_at}|{previous_hash}"
    return hashlib.sha256(payload.encode()).hexdigest()


class AuditTrail:
    """Audit-event sink with chain verification."""

    async def append(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        *,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        before_state: Optional[dict] = None,
        after_state: Optional[dict] = None,
        actor_type: str = "SYSTEM",
        actor_id: Optional[str] = None,
    ) -> AuditEvent:
        await self._lock_chain(session, tenant_id)

        for attempt in range(1, _APPEND_ATTEMPTS + 1):
            try:
                async with session.begin_nested():
                    entry = await self._insert_next(
                        session,
                        tenant_id,
                        action=action,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        before_state=before_state,
                        after_state=after_state,
                        actor_type=actor_type,
                        actor_id=actor_id,
                    )
                break
            except IntegrityError:
                if attempt == _APPEND_ATTEMPTS:
                    raise
                logger.warning("audit_sequence_conflict", tenant_id=str(tenant_id), attempt=attempt)

        logger.info(
            "audit_event_logged",
            tenant_id=str(tenant_id),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            sequence=entry.sequence,
        )
        return entry

    async def _lock_chain(self, session: AsyncSession, tenant_id: uuid.UUID) -> None:
        """Serialize appends per tenant until the transaction ends (Postgres only)."""
        if session.get_bind().dialect.name != "postgresql":
            return
        await session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": f"audit_events:{tenant_id}"},
        )

    async def _insert_next(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        *,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        before_state: Optional[dict],
        after_state: Optional[dict],
        actor_type: str,
        actor_id: Optional[str],
    ) -> AuditEvent:
        last = await self._get_last(session, tenant_id)
        sequence = last.sequence + 1 if last else 1
        previous_hash = last.entry_hash if last else None
        now = datetime.utcnow()

        entry = AuditEvent(
            tenant_id=tenant_id,
            sequence=sequence,
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            previous_hash=previous_hash,
            created_at=now,
            entry_hash=_compute_entry_hash(
                tenant_id=str(tenant_id),
                sequence=sequence,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id or "",
                before_state=before_state,
                after_state=after_state,
                created_at=now.isoformat(),
                previous_hash=previous_hash or "",
            ),
        )
        session.add(entry)
        await session.flush()
        return entry

    async def _get_last(self, session: AsyncSession, tenant_id: uuid.UUID) -> Optional[AuditEvent]:
        result = await session.execute(
            select(AuditEvent)
            .where(AuditEvent.tenant_id == tenant_id)
            .order_by(AuditEvent.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def verify_chain(self, session: AsyncSession, tenant_id: uuid.UUID) -> dict:
        """Recompute every hash for a tenant and report breaks."""
        result = await session.execute(
            select(AuditEvent)
            .where(AuditEvent.tenant_id == tenant_id)
            .order_by(AuditEvent.sequence)
        )
        entries = result.scalars().all()

        breaks: list[dict] = []
        previous_hash: Optional[str] = None
        for entry in entries:
            if entry.previous_hash != previous_hash:
                breaks.append({"entry_id": str(entry.id), "sequence": entry.sequence, "type": "chain_link"})
            expected = _compute_entry_hash(
                tenant_id=str(entry.tenant_id),
                sequence=entry.sequence,
                action=entry.action,
                resource_type=entry.resource_type,
                resource_id=entry.resource_id or "",
                before_state=entry.before_state,
                after_state=entry.after_state,
                created_at=entry.created_at.isoformat(),
                previous_hash=entry.previous_hash or "",
            )
            if entry.entry_hash != expected:
                breaks.append({"entry_id": str(entry.id), "sequence": entry.sequence, "type": "content"})
            previous_hash = entry.entry_hash

        if breaks:
            logger.error("audit_chain_broken", tenant_id=str(tenant_id), breaks=len(breaks))

        return {
            "total_entries": len(entries),
            "chain_intact": not breaks,
            "breaks": breaks,
        }
