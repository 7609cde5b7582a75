"""
Deal model - local cache of CRM deals.

Rows are written by the CRM synchronizer, which lives outside this service;
the pipeline only reads them, so a row may lag behind the CRM.
"""

from sqlalchemy import Boolean, Column, DateTime, Float, String

from intelhub.db.base import Base, JSONType


class Deal(Base):
    __tablename__ = "deals"

    hubspot_id = Column(String, primary_key=True)
    dealname = Column(String, nullable=True)
    amount = Column(Float, nullable=True)
    dealstage = Column(String, nullable=True)
    pipeline = Column(String, nullable=True)
    dealtype = Column(String, nullable=True)
    closedate = Column(DateTime(timezone=True), nullable=True)

    is_closed = Column(Boolean, nullable=False, default=False)
    is_won = Column(Boolean, nullable=False, default=False)
    is_lost = Column(Boolean, nullable=False, default=False)

    company_ids = Column(JSONType, nullable=False, default=list)
    contact_ids = Column(JSONType, nullable=False, default=list)
    properties = Column(JSONType, nullable=True)

    last_activity_date = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
