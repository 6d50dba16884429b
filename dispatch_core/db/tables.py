"""
Table definitions for the SQL case store.

Cases, hospitals, audit events and override records are stored as JSON
documents; the indexed columns exist for filtering and optimistic locking.
"""

from sqlalchemy import Column, DateTime, Integer, JSON, String

from dispatch_core.db.connection import Base


class CaseRow(Base):
    __tablename__ = "cases"

    id = Column(String(64), primary_key=True)
    status = Column(String(32), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=0)
    document = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class HospitalRow(Base):
    __tablename__ = "hospitals"

    id = Column(String(64), primary_key=True)
    document = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class AuditRow(Base):
    __tablename__ = "audit_events"

    id = Column(String(64), primary_key=True)
    case_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(32), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    document = Column(JSON, nullable=False)


class OverrideRow(Base):
    __tablename__ = "override_records"

    id = Column(String(64), primary_key=True)
    case_id = Column(String(64), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    document = Column(JSON, nullable=False)
