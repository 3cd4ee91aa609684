"""
Version store: append-only history of full main.cf snapshots.
"""
import json
from typing import List, Mapping, Optional

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relayconf.database import utcnow
from relayconf.exceptions import NotFound
from relayconf.models.version import ConfigVersion, VersionStatus
from relayconf.parameters import SECRET_KEYS
from relayconf.services.results import Editor


class VersionStore:
    """
    Numbering is global and assigned at creation, so drafts and applied
    snapshots share one sequence. Methods flush but never commit.
    """

    async def create_draft(
        self,
        db: AsyncSession,
        full_content: str,
        parameters: Mapping[str, Optional[str]],
        author: Editor,
        notes: Optional[str] = None,
    ) -> ConfigVersion:
        """Record a new snapshot with status 'draft'."""
        leaked = SECRET_KEYS.intersection(parameters)
        if leaked:
            raise ValueError(f"Secret parameters must not be stored in version history: {sorted(leaked)}")

        result = await db.execute(select(func.max(ConfigVersion.version_number)))
        next_number = (result.scalar_one_or_none() or 0) + 1

        version = ConfigVersion(
            version_number=next_number,
            full_content=full_content,
            parameters_json=json.dumps(dict(parameters), sort_keys=True),
            created_at=utcnow(),
            created_by_id=author.id,
            created_by_username=author.username,
            status=VersionStatus.DRAFT.value,
            notes=notes,
        )
        db.add(version)
        await db.flush()
        return version

    async def mark_applied(self, db: AsyncSession, version_number: int, applier: Editor) -> ConfigVersion:
        """
        Make a version the single applied one.

        The currently applied row (if any, and if different) is moved to
        rolled_back before the target is marked, both inside the caller's
        transaction.
        """
        target = await self.get(db, version_number)

        await db.execute(
            update(ConfigVersion)
            .where(ConfigVersion.status == VersionStatus.APPLIED.value)
            .where(ConfigVersion.version_number != version_number)
            .values(status=VersionStatus.ROLLED_BACK.value)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(ConfigVersion)
            .where(ConfigVersion.version_number == version_number)
            .values(
                status=VersionStatus.APPLIED.value,
                applied_at=utcnow(),
                applied_by_id=applier.id,
                applied_by_username=applier.username,
            )
            .execution_options(synchronize_session=False)
        )
        await db.flush()
        await db.refresh(target)
        logger.debug(f"Version {version_number} marked applied")
        return target

    async def get(self, db: AsyncSession, version_number: int) -> ConfigVersion:
        result = await db.execute(
            select(ConfigVersion).where(ConfigVersion.version_number == version_number)
        )
        version = result.scalar_one_or_none()
        if version is None:
            raise NotFound(f"Configuration version {version_number} does not exist")
        return version

    async def list_recent(self, db: AsyncSession, limit: int) -> List[ConfigVersion]:
        """Newest first."""
        result = await db.execute(
            select(ConfigVersion).order_by(ConfigVersion.version_number.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def current_applied(self, db: AsyncSession) -> Optional[ConfigVersion]:
        result = await db.execute(
            select(ConfigVersion).where(ConfigVersion.status == VersionStatus.APPLIED.value)
        )
        return result.scalar_one_or_none()

    async def count_applied(self, db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count()).select_from(ConfigVersion)
            .where(ConfigVersion.status == VersionStatus.APPLIED.value)
        )
        return result.scalar_one()
