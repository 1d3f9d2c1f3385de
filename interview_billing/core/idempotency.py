"""
interview_billing/core/idempotency.py
Webhook event idempotency backed by the webhook_events table.

Providers deliver at least once. An event id is claimed with an
insert-or-ignore; a redelivery is processed again only if the earlier
attempt never finished.
"""

from typing import Optional

from sqlalchemy import select, update

from interview_billing.core.database import get_db_session, upsert, utcnow, webhook_events


def claim_event(event_id: str, event_type: str, payload_hash: str) -> bool:
    """
    Record an incoming event and decide whether to process it.

    Returns:
        True if the event is new or its previous attempt did not complete
        False if it was already processed (duplicate delivery)
    """
    with get_db_session() as session:
        stmt = upsert(session, webhook_events).values(
            event_id=event_id,
            event_type=event_type,
            payload_hash=payload_hash,
            received_at=utcnow(),
            processed=False,
        )
        result = session.execute(stmt.on_conflict_do_nothing(index_elements=["event_id"]))
        if result.rowcount == 1:
            return True

        processed = session.execute(
            select(webhook_events.c.processed).where(webhook_events.c.event_id == event_id)
        ).scalar()
        return not processed


def mark_processed(event_id: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(webhook_events)
            .where(webhook_events.c.event_id == event_id)
            .values(processed=True, processed_at=utcnow(), error=None)
        )


def mark_failed(event_id: str, error: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(webhook_events)
            .where(webhook_events.c.event_id == event_id)
            .values(processed=False, error=error[:2000])
        )


def get_event_status(event_id: str) -> Optional[dict]:
    """Read-only view of a stored event (None if never seen)."""
    with get_db_session() as session:
        row = session.execute(
            select(webhook_events).where(webhook_events.c.event_id == event_id)
        ).first()
        if not row:
            return None
        return {
            "event_id": row.event_id,
            "event_type": row.event_type,
            "payload_hash": row.payload_hash,
            "processed": bool(row.processed),
            "error": row.error,
        }
