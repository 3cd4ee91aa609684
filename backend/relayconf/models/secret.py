"""
Encrypted credential storage.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime
from relayconf.database import Base, utcnow


class ConfigSecret(Base):
    """Vault record. Only AES-GCM ciphertext is stored, never plaintext."""

    __tablename__ = "config_secrets"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False, index=True)
    encrypted_value = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    updated_by = Column(String(100), nullable=True)
