"""
Audit trail of staging and apply operations.
"""
import json
from typing import Iterable, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from relayconf.exceptions import ConfigEngineError
from relayconf.middleware.correlation import get_correlation_id
from relayconf.models.audit import AuditLog
from relayconf.parameters import mask
from relayconf.services.results import DiffEntry, Editor

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


def masked_diff(diff: Iterable[DiffEntry]) -> str:
    """Serialize a diff with every secret value replaced by the placeholder."""
    return json.dumps([
        {
            "key": entry.key,
            "old_value": mask(entry.key, entry.old_value),
            "new_value": mask(entry.key, entry.new_value),
        }
        for entry in diff
    ])


class AuditLogger:
    """
    Writes audit entries in their own session.

    An entry for a failed apply must survive the rollback of the apply's
    transaction, so entries are never written through the caller's session.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def record(
        self,
        action: str,
        editor: Optional[Editor],
        succeeded: bool,
        summary: str = "",
        diff: Optional[Iterable[DiffEntry]] = None,
        resource_id: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        entry = AuditLog(
            user_id=editor.id if editor else None,
            username=editor.username if editor else None,
            action=action,
            resource_type="config",
            resource_id=resource_id,
            summary=summary,
            diff=masked_diff(diff) if diff is not None else None,
            status=STATUS_SUCCESS if succeeded else STATUS_FAILED,
            error_code=error.code.value if isinstance(error, ConfigEngineError) else (
                type(error).__name__ if error else None
            ),
            error_message=str(error) if error else None,
            correlation_id=get_correlation_id() or None,
        )
        try:
            async with self._session_factory() as db:
                db.add(entry)
                await db.commit()
        except Exception as e:
            # The operation outcome stands even if its audit row cannot be written
            logger.error(f"Failed to write audit entry for '{action}': {type(e).__name__}: {e}")

    async def recent(self, limit: int = 100, action: Optional[str] = None) -> List[AuditLog]:
        async with self._session_factory() as db:
            query = select(AuditLog).order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
            if action:
                query = query.where(AuditLog.action == action)
            result = await db.execute(query)
            return list(result.scalars().all())
