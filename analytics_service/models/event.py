# SQLAlchemy models

from sqlalchemy import Column, String, DateTime, JSON, Index, ForeignKey, Uuid, func
from sqlalchemy.orm import declarative_base
import uuid

Base = declarative_base()


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    api_key = Column(String(64), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Event(Base):
    __tablename__ = "events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    properties = Column(JSON, nullable=False, default=dict)
    user_id = Column(String(255), nullable=True)
    session_id = Column(String(255), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        # Every read is tenant scoped
        Index('idx_events_tenant_timestamp', 'tenant_id', 'timestamp'),
        Index('idx_events_tenant_type_timestamp', 'tenant_id', 'event_type', 'timestamp'),
    )
