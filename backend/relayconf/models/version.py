"""
Configuration version history.
"""
from enum import Enum
from sqlalchemy import Column, Integer, String, Text, DateTime, CheckConstraint, Index, text
from relayconf.database import Base, utcnow


class VersionStatus(str, Enum):
    DRAFT = "draft"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"


class ConfigVersion(Base):
    """
    Full main.cf snapshot.

    Content is immutable once created; only status and the applied_* fields
    change. At most one row is 'applied', enforced by mark_applied's
    transaction and by a partial unique index.
    """

    __tablename__ = "config_versions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'applied', 'rolled_back')",
            name="ck_config_versions_status",
        ),
        Index(
            "uq_config_versions_single_applied",
            "status",
            unique=True,
            sqlite_where=text("status = 'applied'"),
            postgresql_where=text("status = 'applied'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    version_number = Column(Integer, unique=True, nullable=False, index=True)
    full_content = Column(Text, nullable=False)
    parameters_json = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    created_by_id = Column(Integer, nullable=True)
    created_by_username = Column(String(100), nullable=False)
    applied_at = Column(DateTime, nullable=True)
    applied_by_id = Column(Integer, nullable=True)
    applied_by_username = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default=VersionStatus.DRAFT.value, index=True)
    notes = Column(Text, nullable=True)
