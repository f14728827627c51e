"""
gobbledata/models/connection.py

ExternalConnection: a user's authorized link to one GA4 property.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gobbledata.models.common import as_utc


class ConnectionState(str, Enum):
    """Lifecycle of a connection. Rows are never physically deleted."""
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class ExternalConnection(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    external_account_id: str
    external_account_name: Optional[str] = None
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    is_active: bool
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("token_expires_at", "last_synced_at", "created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def state(self) -> ConnectionState:
        return ConnectionState.ACTIVE if self.is_active else ConnectionState.DISCONNECTED

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.ACTIVE

    def public_dict(self) -> dict:
        """Serializable view without credentials."""
        return {
            "id": self.id,
            "property_id": self.external_account_id,
            "property_name": self.external_account_name,
            "is_active": self.is_active,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
