"""
Staged (not yet applied) parameter changes.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime
from relayconf.database import Base, utcnow


class StagedConfig(Base):
    """
    One pending parameter change.

    Unique per key: staging the same key again replaces the value and its
    attribution. A NULL value means "unset this parameter". Secret values
    hold vault ciphertext.
    """

    __tablename__ = "staged_config"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(Text, nullable=True)
    category = Column(String(50), nullable=False)
    staged_by_id = Column(Integer, nullable=True)
    staged_by_username = Column(String(100), nullable=False)
    staged_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
