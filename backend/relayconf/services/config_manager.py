"""
Configuration management service.

Entry point for everything the HTTP layer may do with the Postfix
configuration: read the live state, stage and discard changes, validate,
apply, roll back and browse history. Built once at startup and kept on
app.state.
"""
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from relayconf.config import Settings
from relayconf.constants import REDACTED
from relayconf.exceptions import ValidationError
from relayconf.models.audit import AuditLog
from relayconf.models.version import ConfigVersion
from relayconf.parameters import CREDENTIAL_KEYS, PARAMETERS, canonicalise, check_value, mask
from relayconf.services.apply_orchestrator import ApplyOrchestrator, credential_secret_name
from relayconf.services.audit_log import AuditLogger
from relayconf.services.config_files import ConfigFiles
from relayconf.services.lock_manager import LockManager
from relayconf.services.postfix_control import PostfixController
from relayconf.services.results import (
    SYSTEM_EDITOR,
    ApplyResult,
    DiffEntry,
    Editor,
    RollbackResult,
    ValidationReport,
    VersionSummary,
)
from relayconf.services.secret_vault import SecretVault
from relayconf.services.staging_store import StagingStore
from relayconf.services.version_store import VersionStore
from relayconf.utils.validation import Validator


class ConfigManager:
    """Owns the stores, vault, lock and orchestrator for one Postfix instance."""

    def __init__(
        self,
        config: Settings,
        session_factory: async_sessionmaker,
        master_secret: str,
        controller: Optional[PostfixController] = None,
    ):
        self.config = config
        self._session_factory = session_factory
        self.vault = SecretVault(master_secret, config.engine.kdf_iterations)
        self.staging = StagingStore()
        self.versions = VersionStore()
        self.files = ConfigFiles(config.postfix, config.engine.min_free_bytes)
        self.controller = controller or PostfixController(config.commands)
        self.lock = LockManager(Path(config.postfix.lock_file), config.engine.lock_timeout_seconds)
        self.audit = AuditLogger(session_factory)
        self.orchestrator = ApplyOrchestrator(
            session_factory=session_factory,
            files=self.files,
            controller=self.controller,
            vault=self.vault,
            staging=self.staging,
            versions=self.versions,
            lock=self.lock,
            audit=self.audit,
            postfix=config.postfix,
        )

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory

    # =========================================================================
    # Reads (never take the apply lock)
    # =========================================================================

    async def get_current(self) -> Dict[str, Optional[str]]:
        """
        Live parameters with secrets masked.

        Every managed key is present (None when unset); unmanaged keys found
        in main.cf are included as they are. Lookup table entries are read
        from their files.
        """
        live = self.files.read_live()
        current: Dict[str, Optional[str]] = {key: None for key in PARAMETERS}
        current.update(live)
        current.update(self.files.read_tables())

        has_credentials = False
        relayhost = live.get("relayhost")
        if relayhost:
            async with self._session_factory() as db:
                has_credentials = await self.vault.exists(db, credential_secret_name(relayhost))
        for key in CREDENTIAL_KEYS:
            current[key] = REDACTED if has_credentials else None
        return current

    async def get_staged_diff(self) -> List[DiffEntry]:
        """Changed keys with old and new values, secrets masked."""
        current = await self.get_current()
        async with self._session_factory() as db:
            return await self.staging.diff(db, current)

    async def get_staged(self) -> List[Dict[str, Any]]:
        """Raw staging entries with attribution, secrets masked."""
        async with self._session_factory() as db:
            entries = await self.staging.list(db)
        return [
            {
                "key": e.key,
                "value": mask(e.key, e.value),
                "category": e.category,
                "staged_by": e.staged_by_username,
                "staged_at": e.staged_at,
            }
            for e in entries
        ]

    async def list_history(self, limit: Optional[int] = None) -> List[VersionSummary]:
        limit = limit or self.config.engine.history_limit
        async with self._session_factory() as db:
            versions = await self.versions.list_recent(db, limit)
        return [
            VersionSummary(
                version_number=v.version_number,
                status=v.status,
                created_at=v.created_at,
                created_by=v.created_by_username,
                applied_at=v.applied_at,
                applied_by=v.applied_by_username,
                notes=v.notes,
            )
            for v in versions
        ]

    async def get_version(self, version_number: int) -> ConfigVersion:
        """Full snapshot of one version; raises NotFound."""
        async with self._session_factory() as db:
            return await self.versions.get(db, version_number)

    async def get_audit_log(self, limit: int = 100, action: Optional[str] = None) -> List[AuditLog]:
        return await self.audit.recent(limit, action)

    async def status(self) -> Dict[str, Any]:
        async with self._session_factory() as db:
            staged = await self.staging.count(db)
            applied = await self.versions.current_applied(db)
        return {
            "apply_state": self.orchestrator.state.value,
            "locked": self.lock.locked,
            "staged_count": staged,
            "applied_version": applied.version_number if applied else None,
            "postfix_running": await self.controller.is_running(),
        }

    # =========================================================================
    # Staging
    # =========================================================================

    async def stage(self, partial: Mapping[str, Optional[str]], editor: Editor) -> List[DiffEntry]:
        """
        Validate and stage a partial parameter set.

        Nothing is stored unless every value passes. A None value stages an
        unset of that key; the empty string is staged as an explicit empty
        value. Secret values are stored encrypted.

        Raises:
            ValidationError: With one entry per problem found
        """
        validator = Validator()
        canonical: Dict[str, Optional[str]] = {}
        for key, value in partial.items():
            value = canonicalise(key, value)
            check_value(validator, key, value)
            canonical[key] = value
        if not canonical:
            validator.add_error("parameters", "no parameters submitted")
        if validator.has_errors():
            logger.info(f"Rejected staging request from {editor.username}: {len(validator.errors)} error(s)")
            raise ValidationError(validator.errors)

        async with self._session_factory() as db:
            for key, value in canonical.items():
                spec = PARAMETERS[key]
                stored = self.vault.encrypt(value) if spec.secret and value is not None else value
                await self.staging.stage(db, key, stored, spec.category, editor)
            await db.commit()

        logger.info(f"{editor.username} staged {len(canonical)} parameter(s): {', '.join(sorted(canonical))}")
        diff = await self.get_staged_diff()
        await self.audit.record(
            "stage", editor, succeeded=True,
            summary=f"Staged {len(canonical)} parameter(s)",
            diff=[d for d in diff if d.key in canonical],
        )
        return diff

    async def unstage(self, key: str, editor: Editor) -> bool:
        """Drop one staged key without touching the rest."""
        async with self._session_factory() as db:
            removed = await self.staging.remove(db, key)
            await db.commit()
        if removed:
            await self.audit.record("unstage", editor, succeeded=True, summary=f"Unstaged {key}", resource_id=key)
        return removed

    async def discard_staged(self, editor: Editor = SYSTEM_EDITOR) -> int:
        async with self._session_factory() as db:
            count = await self.staging.discard_all(db)
            await db.commit()
        logger.info(f"{editor.username} discarded {count} staged change(s)")
        await self.audit.record("discard", editor, succeeded=True, summary=f"Discarded {count} staged change(s)")
        return count

    # =========================================================================
    # Apply pipeline
    # =========================================================================

    async def validate_only(self) -> ValidationReport:
        return await self.orchestrator.validate_only()

    async def apply(self, editor: Editor, notes: Optional[str] = None) -> ApplyResult:
        return await self.orchestrator.apply(editor, notes)

    async def rollback(self, version_number: int, editor: Editor) -> RollbackResult:
        return await self.orchestrator.rollback(version_number, editor)
