"""
Retention service: prunes old audit entries and configuration backups.
"""
from datetime import timedelta
from typing import Dict

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from relayconf.config import EngineConfig
from relayconf.database import utcnow
from relayconf.models.audit import AuditLog
from relayconf.services.config_files import ConfigFiles


class RetentionService:
    """
    Keeps the audit table and the backup directory bounded.

    Version history is never pruned: any version may be a rollback target.
    """

    def __init__(self, config: EngineConfig, files: ConfigFiles):
        self.config = config
        self.files = files

    async def cleanup_old_data(self, db: AsyncSession) -> Dict[str, int]:
        """Delete audit rows past retention and surplus backups."""
        retention_days = self.config.audit_retention_days
        logger.info(f"Starting retention cleanup (audit: {retention_days} days, backups: {self.config.backup_keep})")

        cutoff = utcnow() - timedelta(days=retention_days)
        try:
            result = await db.execute(delete(AuditLog).where(AuditLog.timestamp < cutoff))
            await db.commit()
        except Exception as e:
            logger.error(f"Error cleaning up {AuditLog.__tablename__}: {e}")
            await db.rollback()
            raise
        audit_deleted = result.rowcount or 0
        if audit_deleted > 0:
            logger.info(f"Deleted {audit_deleted} old records from {AuditLog.__tablename__}")

        backups_deleted = self.files.prune_backups(self.config.backup_keep)
        if backups_deleted > 0:
            logger.info(f"Deleted {backups_deleted} old configuration backup(s)")

        logger.info("Retention cleanup completed")
        return {"audit_log": audit_deleted, "backups": backups_deleted}
