"""
Webhook event ledger (`billing_events`).

An event id is recorded once; a redelivery of an event that was already
processed is skipped, a redelivery of one that failed is processed again.
"""

import hashlib

from sqlalchemy import select, update

from gobbledata.core.database import Database, billing_events, insert_if_absent
from gobbledata.models.common import utc_now


def payload_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


class BillingEventStore:
    def __init__(self, database: Database):
        self.database = database

    def begin(self, event_id: str, event_type: str, body: bytes) -> bool:
        """Record the event. Returns False if it was already processed."""
        with self.database.session() as session:
            insert_if_absent(
                session,
                billing_events,
                {
                    "stripe_event_id": event_id,
                    "event_type": event_type,
                    "payload_hash": payload_hash(body),
                    "processed": False,
                    "received_at": utc_now(),
                },
                conflict_columns=["stripe_event_id"],
            )
            processed = session.execute(
                select(billing_events.c.processed).where(billing_events.c.stripe_event_id == event_id)
            ).scalar_one()
            return not processed

    def mark_processed(self, event_id: str) -> None:
        with self.database.session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(processed=True, processed_at=utc_now(), error=None)
            )

    def mark_failed(self, event_id: str, error: str) -> None:
        with self.database.session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(error=error[:2000])
            )
