"""
Audit trail for configuration operations.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime
from relayconf.database import Base, utcnow


class AuditLog(Base):
    """One staged/discarded/applied/rolled-back operation, successful or not."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    user_id = Column(Integer, nullable=True)
    username = Column(String(100), nullable=True)
    action = Column(String(50), nullable=False, index=True)  # stage, discard, apply, rollback
    resource_type = Column(String(50), nullable=False, default="config")
    resource_id = Column(String(100), nullable=True)
    summary = Column(Text, nullable=True)
    diff = Column(Text, nullable=True)  # JSON, secrets masked
    status = Column(String(20), nullable=False)  # success, failed
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    correlation_id = Column(String(64), nullable=True)
