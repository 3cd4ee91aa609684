"""
Staging store: pending parameter changes, one row per key.
"""
from typing import Dict, List, Mapping, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from relayconf.database import utcnow
from relayconf.models.staged import StagedConfig
from relayconf.parameters import category_of, is_secret, mask
from relayconf.services.results import DiffEntry, Editor


class StagingStore:
    """
    Durable key-value table of not-yet-applied changes.

    Values must already have passed the parameter validator; the store does
    not re-check them. Methods flush but never commit, so callers can group
    staging writes with other work in one transaction.
    """

    async def stage(
        self,
        db: AsyncSession,
        key: str,
        value: Optional[str],
        category: str,
        editor: Editor,
    ) -> StagedConfig:
        """Insert or replace the staged value for a key (last writer wins)."""
        result = await db.execute(select(StagedConfig).where(StagedConfig.key == key))
        entry = result.scalar_one_or_none()
        if entry:
            entry.value = value
            entry.category = category
            entry.staged_by_id = editor.id
            entry.staged_by_username = editor.username
            entry.staged_at = utcnow()
        else:
            entry = StagedConfig(
                key=key,
                value=value,
                category=category,
                staged_by_id=editor.id,
                staged_by_username=editor.username,
                staged_at=utcnow(),
            )
            db.add(entry)
        await db.flush()
        return entry

    async def list(self, db: AsyncSession) -> List[StagedConfig]:
        """All staged entries ordered by category then key."""
        result = await db.execute(
            select(StagedConfig).order_by(StagedConfig.category, StagedConfig.key)
        )
        return list(result.scalars().all())

    async def values(self, db: AsyncSession) -> Dict[str, Optional[str]]:
        return {entry.key: entry.value for entry in await self.list(db)}

    async def count(self, db: AsyncSession) -> int:
        result = await db.execute(select(func.count()).select_from(StagedConfig))
        return result.scalar_one()

    async def remove(self, db: AsyncSession, key: str) -> bool:
        """Drop a single staged key."""
        result = await db.execute(delete(StagedConfig).where(StagedConfig.key == key))
        return bool(result.rowcount)

    async def diff(self, db: AsyncSession, current: Mapping[str, Optional[str]]) -> List[DiffEntry]:
        """
        Keys whose staged value differs from the live value.

        Secret values are masked on both sides. A staged secret is always
        reported, since ciphertext cannot be compared with the live value.
        """
        changes = []
        for entry in await self.list(db):
            old_value = current.get(entry.key)
            if not is_secret(entry.key) and old_value == entry.value:
                continue
            changes.append(DiffEntry(
                key=entry.key,
                category=entry.category or category_of(entry.key),
                old_value=mask(entry.key, old_value),
                new_value=mask(entry.key, entry.value),
            ))
        return changes

    async def discard_all(self, db: AsyncSession) -> int:
        """Delete every staged entry and report how many were removed."""
        result = await db.execute(delete(StagedConfig))
        return result.rowcount or 0

    async def discard_entries(self, db: AsyncSession, entries: List[StagedConfig]) -> int:
        """
        Delete the given entries unless they were re-staged since being read.

        Used after an apply so a value staged while the apply was running
        stays pending instead of being silently dropped.
        """
        removed = 0
        for entry in entries:
            result = await db.execute(
                delete(StagedConfig)
                .where(StagedConfig.id == entry.id)
                .where(StagedConfig.staged_at == entry.staged_at)
            )
            removed += result.rowcount or 0
        return removed
