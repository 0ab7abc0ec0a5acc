"""Product event model (telemetry sink table)."""

import uuid

from sqlalchemy import Column, DateTime, Index, Text, Uuid

from background_runs.database import Base, JSONType
from background_runs.services.timestamps import utcnow


class ProductEvent(Base):
    """ProductEvent records one telemetry event about a run."""

    __tablename__ = "product_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    project_id = Column(Text)
    event_name = Column(Text, nullable=False)  # e.g. 'background_run.started'
    session_id = Column(Text, nullable=False)
    event_data = Column(JSONType, nullable=False, default=dict)
    occurred_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_product_events_session", "session_id"),
        Index("idx_product_events_name", "event_name"),
    )
