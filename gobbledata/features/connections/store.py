"""
Credential store for GA4 connections.

Row-level access to `ga4_connections`. Every query that means "connected"
goes through `active_only()` so the soft-delete predicate lives in one place.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, func, and_

from gobbledata.core.database import Database, ga4_connections, upsert
from gobbledata.models.common import utc_now
from gobbledata.models.connection import ExternalConnection

# Columns overwritten when the same (user, property) is authorized again
_UPSERT_COLUMNS = [
    "external_account_name",
    "access_token",
    "token_expires_at",
    "is_active",
    "last_synced_at",
    "updated_at",
]


def active_only():
    return ga4_connections.c.is_active.is_(True)


def _row_to_connection(row) -> ExternalConnection:
    return ExternalConnection(
        id=row.id,
        user_id=row.user_id,
        external_account_id=row.external_account_id,
        external_account_name=row.external_account_name,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_expires_at=row.token_expires_at,
        is_active=bool(row.is_active),
        last_synced_at=row.last_synced_at,
        created_at=row.created_at,
    )


class CredentialStore:
    def __init__(self, database: Database):
        self.database = database

    def upsert_connection(
        self,
        *,
        user_id: str,
        external_account_id: str,
        external_account_name: Optional[str],
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> ExternalConnection:
        """Insert or overwrite the (user_id, external_account_id) row and reactivate it."""
        now = now or utc_now()
        with self.database.session() as session:
            upsert(
                session,
                ga4_connections,
                {
                    "user_id": user_id,
                    "external_account_id": external_account_id,
                    "external_account_name": external_account_name,
                    "access_token": access_token,
                    "refresh_token": refresh_token,
                    "token_expires_at": token_expires_at,
                    "is_active": True,
                    "last_synced_at": now,
                    "created_at": now,
                    "updated_at": now,
                },
                conflict_columns=["user_id", "external_account_id"],
                update_columns=_UPSERT_COLUMNS,
                keep_existing_when_null=["refresh_token"],
            )
            row = session.execute(
                select(ga4_connections).where(
                    and_(
                        ga4_connections.c.user_id == user_id,
                        ga4_connections.c.external_account_id == external_account_id,
                    )
                )
            ).one()
            return _row_to_connection(row)

    def list_active(self, user_id: str) -> List[ExternalConnection]:
        with self.database.session() as session:
            rows = session.execute(
                select(ga4_connections)
                .where(ga4_connections.c.user_id == user_id)
                .where(active_only())
                .order_by(ga4_connections.c.created_at.asc(), ga4_connections.c.id.asc())
            ).fetchall()
            return [_row_to_connection(row) for row in rows]

    def count_active(self, user_id: str) -> int:
        with self.database.session() as session:
            return session.execute(
                select(func.count())
                .select_from(ga4_connections)
                .where(ga4_connections.c.user_id == user_id)
                .where(active_only())
            ).scalar_one()

    def get_owned(self, user_id: str, connection_id: int, *, active: bool = True) -> Optional[ExternalConnection]:
        """Fetch a row only if it belongs to user_id (and is active, by default)."""
        query = select(ga4_connections).where(
            and_(
                ga4_connections.c.id == connection_id,
                ga4_connections.c.user_id == user_id,
            )
        )
        if active:
            query = query.where(active_only())
        with self.database.session() as session:
            row = session.execute(query).first()
            return _row_to_connection(row) if row else None

    def deactivate(self, user_id: str, connection_id: int) -> bool:
        """Soft-delete. Returns False when no active row owned by user_id matched."""
        with self.database.session() as session:
            result = session.execute(
                update(ga4_connections)
                .where(ga4_connections.c.id == connection_id)
                .where(ga4_connections.c.user_id == user_id)
                .where(active_only())
                .values(is_active=False, updated_at=utc_now())
            )
            return result.rowcount > 0

    def update_tokens(
        self,
        connection_id: int,
        *,
        access_token: str,
        token_expires_at: datetime,
        refresh_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utc_now()
        values = {
            "access_token": access_token,
            "token_expires_at": token_expires_at,
            "last_synced_at": now,
            "updated_at": now,
        }
        if refresh_token:
            values["refresh_token"] = refresh_token
        with self.database.session() as session:
            session.execute(
                update(ga4_connections)
                .where(ga4_connections.c.id == connection_id)
                .values(**values)
            )
