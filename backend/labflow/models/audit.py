from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from labflow.models.order import utcnow


class AuditLogEntry(SQLModel, table=True):
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    actor_id: str = Field(index=True)
    action: str
    entity_type: str
    entity_id: Optional[str] = Field(default=None, index=True)
    old_values: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    new_values: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    reason: Optional[str] = None
    outcome: str = "succeeded"
    created_at: datetime = Field(default_factory=utcnow)
