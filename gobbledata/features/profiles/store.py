"""
User profile access.

Only the fields the billing flow needs: email and the cached Stripe
customer id.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update

from gobbledata.core.database import Database, user_profiles, insert_if_absent
from gobbledata.models.common import utc_now


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: Optional[str]
    stripe_customer_id: Optional[str]


class ProfileStore:
    def __init__(self, database: Database):
        self.database = database

    def get(self, user_id: str) -> Optional[UserProfile]:
        with self.database.session() as session:
            row = session.execute(
                select(user_profiles).where(user_profiles.c.id == user_id)
            ).first()
            if not row:
                return None
            return UserProfile(id=row.id, email=row.email, stripe_customer_id=row.stripe_customer_id)

    def ensure(self, user_id: str, email: Optional[str] = None) -> UserProfile:
        now = utc_now()
        with self.database.session() as session:
            insert_if_absent(
                session,
                user_profiles,
                {"id": user_id, "email": email, "created_at": now, "updated_at": now},
                conflict_columns=["id"],
            )
            if email:
                session.execute(
                    update(user_profiles)
                    .where(user_profiles.c.id == user_id)
                    .where(user_profiles.c.email.is_(None))
                    .values(email=email, updated_at=now)
                )
        return self.get(user_id)

    def set_stripe_customer_id(self, user_id: str, customer_id: Optional[str]) -> None:
        """Cache (or, with None, clear) the user's billing customer reference."""
        with self.database.session() as session:
            session.execute(
                update(user_profiles)
                .where(user_profiles.c.id == user_id)
                .values(stripe_customer_id=customer_id, updated_at=utc_now())
            )
