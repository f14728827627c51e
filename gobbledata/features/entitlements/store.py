"""
Subscription record store.

One row per user in `subscriptions`. Creation is first-creator-wins
(INSERT .. ON CONFLICT DO NOTHING then re-read); every later write is an
update that copies processor state onto the existing row.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update

from gobbledata.core.database import Database, subscriptions, insert_if_absent
from gobbledata.models.common import utc_now
from gobbledata.models.subscription import SubscriptionRecord


def _row_to_record(row) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=row.user_id,
        plan_type=row.plan_type,
        status=row.status,
        billing_customer_id=row.billing_customer_id,
        billing_subscription_id=row.billing_subscription_id,
        trial_ends_at=row.trial_ends_at,
        trial_end_date=row.trial_end_date,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SubscriptionStore:
    def __init__(self, database: Database):
        self.database = database

    def get(self, user_id: str) -> Optional[SubscriptionRecord]:
        with self.database.session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.user_id == user_id)
            ).first()
            return _row_to_record(row) if row else None

    def find_user_by_billing_subscription(self, billing_subscription_id: str) -> Optional[str]:
        with self.database.session() as session:
            row = session.execute(
                select(subscriptions.c.user_id).where(
                    subscriptions.c.billing_subscription_id == billing_subscription_id
                )
            ).first()
            return row.user_id if row else None

    def create_if_absent(
        self,
        user_id: str,
        *,
        plan_type: str,
        status: str,
        trial_ends_at: datetime,
        now: Optional[datetime] = None,
    ) -> tuple:
        """
        Create the user's record unless one exists.

        Returns (record, created). Under concurrent first calls exactly one
        caller gets created=True; the others read back the winner's row.
        """
        now = now or utc_now()
        with self.database.session() as session:
            created = insert_if_absent(
                session,
                subscriptions,
                {
                    "user_id": user_id,
                    "plan_type": plan_type,
                    "status": status,
                    "trial_ends_at": trial_ends_at,
                    "created_at": now,
                    "updated_at": now,
                },
                conflict_columns=["user_id"],
            )
        record = self.get(user_id)
        if record is None:
            raise RuntimeError(f"Subscription record for {user_id} vanished after insert")
        return record, created

    def mirror_remote_state(
        self,
        user_id: str,
        *,
        status: str,
        plan_type: Optional[str] = None,
        billing_subscription_id: Optional[str] = None,
        billing_customer_id: Optional[str] = None,
        trial_end_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Copy processor-owned fields onto the user's record.

        Never creates a record. Returns False when the user has none yet.
        """
        values = {"status": status, "updated_at": now or utc_now()}
        if plan_type is not None:
            values["plan_type"] = plan_type
        if billing_subscription_id is not None:
            values["billing_subscription_id"] = billing_subscription_id
        if billing_customer_id is not None:
            values["billing_customer_id"] = billing_customer_id
        if trial_end_date is not None:
            values["trial_end_date"] = trial_end_date

        with self.database.session() as session:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .values(**values)
            )
            return result.rowcount > 0
