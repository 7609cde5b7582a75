"""
IntelligenceJob model - one agent run against one CRM entity, plus its
versioned result, bounded history and audit log.
"""

import uuid
from sqlalchemy import Column, Index, Integer, String, Text, DateTime, Uuid
from sqlalchemy.sql import func

from intelhub.db.base import Base, JSONType


class IntelligenceJob(Base):
    __tablename__ = "intelligence_jobs"
    __table_args__ = (
        Index("ix_intelligence_jobs_entity", "entity_type", "entity_id"),
        Index("ix_intelligence_jobs_status_started", "status", "started_at"),
    )

    job_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # company | contact | deal
    entity_type = Column(String, nullable=False)
    # External CRM key
    entity_id = Column(String, nullable=False)
    entity_name = Column(String, nullable=False)

    # pending | running | complete | error | cancelled
    status = Column(String, nullable=False, default="pending", index=True)

    version = Column(Integer, nullable=False, default=1)
    # Job this one superseded; not a foreign key
    previous_job_id = Column(Uuid(as_uuid=True), nullable=True)
    analysis_id = Column(String, nullable=False)

    result = Column(JSONType, nullable=True)
    # Small projection of result used by listings
    result_summary = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    stats = Column(JSONType, nullable=True)
    logs = Column(JSONType, nullable=False, default=list)

    history = Column(JSONType, nullable=False, default=list)
    change_detection = Column(JSONType, nullable=True)

    # who triggered the job, null for system triggered jobs
    user_id = Column(String, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    # last hand-off to a runner; null while never dispatched
    dispatched_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), onupdate=func.now(), server_default=func.now()
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("complete", "error", "cancelled")
