"""
Apply orchestrator: the state machine that turns staged changes into a live,
verified Postfix configuration.

Success path:
    IDLE -> LOCKED -> MERGING -> VALIDATING -> WRITING -> RELOADING
         -> VERIFYING -> COMMITTED -> IDLE

Failure path (any stage):
    ... -> FAILED -> COMPENSATING -> IDLE

Nothing live is touched before WRITING, so failures up to and including
VALIDATING need no compensation. From WRITING on, the backups taken at the
start of WRITING are restored and Postfix is reloaded on the old files.
A failed restore is raised as CompensationFailure and never retried.
"""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relayconf.config import PostfixConfig
from relayconf.constants import RELAY_AUTH_SECRET_PREFIX
from relayconf.exceptions import (
    CompensationFailure,
    NothingToApply,
    ValidationError,
    ValidationFailed,
    WriteFailure,
)
from relayconf.middleware.correlation import correlation_scope
from relayconf.models.staged import StagedConfig
from relayconf.parameters import CREDENTIAL_KEYS, LOOKUP_TABLE_KEYS, PARAMETERS, validate_parameters
from relayconf.services.audit_log import AuditLogger
from relayconf.services.config_files import ConfigFiles, FileBackup, parse_main_cf, render_main_cf
from relayconf.services.lock_manager import LockManager
from relayconf.services.postfix_control import PostfixController
from relayconf.services.results import ApplyResult, DiffEntry, Editor, RollbackResult, ValidationReport
from relayconf.services.secret_vault import SecretVault, scrub
from relayconf.services.staging_store import StagingStore
from relayconf.services.version_store import VersionStore
from relayconf.utils.validation import FieldError, Validator


class ApplyState(str, Enum):
    IDLE = "idle"
    LOCKED = "locked"
    MERGING = "merging"
    VALIDATING = "validating"
    WRITING = "writing"
    RELOADING = "reloading"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    FAILED = "failed"
    COMPENSATING = "compensating"


@dataclass
class ApplyPlan:
    """Merged configuration computed from the live file and the staging set."""
    params: Dict[str, str]
    content: str
    staged: List[StagedConfig] = field(default_factory=list)
    diff: List[DiffEntry] = field(default_factory=list)
    # relay host -> staged credential tokens (username, password); None pair means delete
    credentials: Dict[str, Optional[Tuple[str, str]]] = field(default_factory=dict)
    # Lookup table contents after the apply, and the staged tables to rewrite
    tables: Dict[str, str] = field(default_factory=dict)
    table_writes: Dict[str, Optional[str]] = field(default_factory=dict)
    # Problems in live values nobody staged; reported, never blocking
    warnings: List[FieldError] = field(default_factory=list)

    @property
    def credentials_changed(self) -> bool:
        return bool(self.credentials)

    @property
    def snapshot(self) -> Dict[str, str]:
        """Everything recorded in the version: main.cf parameters and table contents."""
        return {**self.params, **self.tables}


def credential_secret_name(relayhost: str) -> str:
    return f"{RELAY_AUTH_SECRET_PREFIX}{relayhost}"


class ApplyOrchestrator:
    """
    Serialized apply and rollback against one Postfix instance.

    Owns no global state: every collaborator is injected, and one instance
    is created per managed MTA at startup.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        files: ConfigFiles,
        controller: PostfixController,
        vault: SecretVault,
        staging: StagingStore,
        versions: VersionStore,
        lock: LockManager,
        audit: AuditLogger,
        postfix: PostfixConfig,
    ):
        self._session_factory = session_factory
        self.files = files
        self.controller = controller
        self.vault = vault
        self.staging = staging
        self.versions = versions
        self.lock = lock
        self.audit = audit
        self.postfix = postfix
        self.state = ApplyState.IDLE
        self.failed_stage: Optional[ApplyState] = None

    def _set_state(self, state: ApplyState) -> None:
        logger.debug(f"Apply state {self.state.value} -> {state.value}")
        self.state = state

    def _fail(self) -> None:
        if self.state not in (ApplyState.FAILED, ApplyState.COMPENSATING):
            self.failed_stage = self.state
        self._set_state(ApplyState.FAILED)

    # =========================================================================
    # Merge
    # =========================================================================

    async def _merge(self, db: AsyncSession, allow_empty: bool = False) -> ApplyPlan:
        """
        Overlay the staging set on the live configuration and validate it.

        Raises:
            NothingToApply: If nothing is staged and allow_empty is False
            ValidationError: If the merged values fail the parameter checks
        """
        staged = await self.staging.list(db)
        if not staged and not allow_empty:
            raise NothingToApply()

        live = self.files.read_live()
        live_tables = self.files.read_tables()
        merged: Dict[str, Optional[str]] = dict(live)
        tables: Dict[str, str] = dict(live_tables)
        staged_credentials: Dict[str, Optional[str]] = {}
        table_writes: Dict[str, Optional[str]] = {}
        for entry in staged:
            if entry.key in CREDENTIAL_KEYS:
                staged_credentials[entry.key] = entry.value
            elif entry.key in LOOKUP_TABLE_KEYS:
                table_writes[entry.key] = entry.value or None
                if entry.value:
                    tables[entry.key] = entry.value
                else:
                    tables.pop(entry.key, None)
            elif entry.value is None:
                merged.pop(entry.key, None)
            else:
                merged[entry.key] = entry.value

        # Only staged values must pass; live values Postfix already runs with are reported
        staged_keys = {entry.key for entry in staged}
        checked = {k: v for k, v in merged.items() if k in PARAMETERS}
        checked.update(tables)
        validator = validate_parameters({k: v for k, v in checked.items() if k in staged_keys})
        warnings = validate_parameters({k: v for k, v in checked.items() if k not in staged_keys}).errors
        credentials = self._plan_credentials(validator, staged_credentials, live, merged)
        self._point_at_tables(table_writes, merged)
        if validator.has_errors():
            raise ValidationError(validator.errors)
        for warning in warnings:
            logger.warning(f"Live value of {warning.field} does not pass validation: {warning.message}")

        params = {k: v for k, v in merged.items() if v is not None}
        return ApplyPlan(
            params=params,
            content=render_main_cf(params),
            staged=staged,
            diff=await self.staging.diff(db, {**live, **live_tables}),
            credentials=credentials,
            tables=tables,
            table_writes=table_writes,
            warnings=warnings,
        )

    def _point_at_tables(self, table_writes: Dict[str, Optional[str]], merged: Dict[str, Optional[str]]) -> None:
        """Set or clear the main.cf parameter naming each rewritten table, unless configured otherwise."""
        for key, value in table_writes.items():
            parameter = PARAMETERS[key].table.map_parameter
            reference = self.files.table_reference(key)
            if value and not merged.get(parameter):
                merged[parameter] = reference
            elif not value and merged.get(parameter) == reference:
                merged.pop(parameter, None)

    def _plan_credentials(
        self,
        validator: Validator,
        staged: Dict[str, Optional[str]],
        live: Dict[str, str],
        merged: Dict[str, Optional[str]],
    ) -> Dict[str, Optional[Tuple[str, str]]]:
        if not staged:
            return {}
        username, password = (staged.get(k) for k in ("relay_username", "relay_password"))
        relayhost = merged.get("relayhost") or ""

        if len(staged) != len(CREDENTIAL_KEYS):
            validator.add_error("relay_password", "relay_username and relay_password must be staged together")
            return {}

        if username is None and password is None:
            hosts = {h for h in (live.get("relayhost"), relayhost) if h}
            return {host: None for host in hosts}

        if username is None or password is None:
            validator.add_error("relay_password", "relay_username and relay_password must both be set or both unset")
            return {}
        if not validator.validate_required("relayhost", relayhost, "relay credentials require a relayhost"):
            return {}

        # Point Postfix at the managed credential file unless configured otherwise
        if not merged.get("smtp_sasl_password_maps"):
            merged["smtp_sasl_password_maps"] = self.postfix.credentials_map_reference
        if not merged.get("smtp_sasl_auth_enable"):
            merged["smtp_sasl_auth_enable"] = "yes"
        return {relayhost: (username, password)}

    # =========================================================================
    # Validate
    # =========================================================================

    async def _validate_candidate(self, content: str):
        """
        Write the candidate into a pending directory and run the Postfix check.

        Returns the pending directory on success; the caller removes it.
        On rejection the directory is removed and ValidationFailed raised.
        """
        pending = self.files.create_pending(content)
        try:
            errors = await self.controller.check(pending)
        except BaseException:
            self.files.remove_pending(pending)
            raise
        if errors:
            self.files.remove_pending(pending)
            raise ValidationFailed(errors)
        return pending

    async def validate_only(self) -> ValidationReport:
        """
        Merge and check without taking the lock or touching anything live.

        With an empty staging set the live configuration itself is checked.
        Problems in live values nobody staged come back as warnings.
        """
        with correlation_scope():
            async with self._session_factory() as db:
                try:
                    plan = await self._merge(db, allow_empty=True)
                except ValidationError as e:
                    return ValidationReport(ok=False, errors=e.errors)
            try:
                pending = await self._validate_candidate(plan.content)
            except ValidationFailed as e:
                return ValidationReport(ok=False, errors=e.errors, warnings=plan.warnings)
            self.files.remove_pending(pending)
            return ValidationReport(ok=True, warnings=plan.warnings)

    # =========================================================================
    # Write / reload / verify / compensate
    # =========================================================================

    def _take_backups(self, credentials_changed: bool, table_keys: Iterable[str] = ()) -> List[FileBackup]:
        backups = [self.files.backup(self.files.main_cf)]
        if credentials_changed:
            backups.append(self.files.backup(self.files.credentials_file))
            backups.append(self.files.backup(self.files.credentials_map_file))
        for key in table_keys:
            backups.append(self.files.backup(self.files.table_file(key)))
            backups.append(self.files.backup(self.files.table_map_file(key)))
        return backups

    async def _write(self, pending, credentials_changed: bool, table_keys: Iterable[str] = ()) -> List[FileBackup]:
        """Back up live files and promote the pending main.cf; removes the pending dir."""
        self._set_state(ApplyState.WRITING)
        try:
            backups = self._take_backups(credentials_changed, table_keys)
            # A failed rename leaves the live file untouched, so no compensation
            self.files.promote(pending)
        finally:
            self.files.remove_pending(pending)
        return backups

    async def _write_tables(self, tables: Dict[str, Optional[str]]) -> None:
        for key, value in tables.items():
            path = self.files.write_table(key, value)
            await self.controller.postmap(path)

    async def _reload_and_verify(self) -> None:
        self._set_state(ApplyState.RELOADING)
        await self.controller.reload()
        self._set_state(ApplyState.VERIFYING)
        await self.controller.status()

    async def _compensate(self, backups: List[FileBackup], original: BaseException) -> None:
        """
        Restore the backups and reload Postfix on the previous files.

        Raises:
            CompensationFailure: If restoring or reloading fails
        """
        self._set_state(ApplyState.COMPENSATING)
        logger.error(
            f"Apply failed during {self.failed_stage.value if self.failed_stage else 'unknown'}: "
            f"{type(original).__name__}: {original}; restoring previous configuration"
        )
        try:
            for backup in backups:
                self.files.restore(backup)
            await self.controller.reload()
        except Exception as e:
            logger.critical(
                "COMPENSATION FAILED - Postfix configuration state is unknown and needs manual repair. "
                f"Original failure: {type(original).__name__}: {original}. "
                f"Compensation failure: {type(e).__name__}: {e}. "
                f"Backups: {[str(b.backup_path) for b in backups if b.backup_path]}"
            )
            raise CompensationFailure(original, e) from e
        logger.warning("Previous configuration restored and Postfix reloaded")

    async def _write_credentials(self, db: AsyncSession, plan: ApplyPlan) -> Dict[str, Optional[str]]:
        """
        Rebuild the SASL credential file and its lookup table.

        Returns the vault updates to commit: relay host -> new ciphertext of
        "username:password", or None to delete the record.
        """
        updates: Dict[str, Optional[str]] = {}
        for host, tokens in plan.credentials.items():
            if tokens is None:
                updates[host] = None
                continue
            username = self.vault.decrypt_bytes(tokens[0])
            password = self.vault.decrypt_bytes(tokens[1])
            combined = username + b":" + password
            try:
                updates[host] = self.vault.encrypt(combined.decode("utf-8"))
            finally:
                scrub(username)
                scrub(password)
                scrub(combined)

        records: Dict[str, str] = {}
        for name in await self.vault.names(db, RELAY_AUTH_SECRET_PREFIX):
            records[name[len(RELAY_AUTH_SECRET_PREFIX):]] = await self.vault.get_encrypted(db, name)
        for host, token in updates.items():
            if token is None:
                records.pop(host, None)
            else:
                records[host] = token

        entries = []
        try:
            for host in sorted(records):
                entries.append((host, self.vault.decrypt_bytes(records[host])))
        except BaseException:
            for _, buffer in entries:
                scrub(buffer)
            raise
        self.files.write_credentials(entries)
        await self.controller.postmap(self.files.credentials_file)
        return updates

    # =========================================================================
    # Apply
    # =========================================================================

    async def apply(self, editor: Editor, notes: Optional[str] = None) -> ApplyResult:
        """
        Run the full apply state machine.

        Raises:
            NothingToApply, Busy, ValidationError, ValidationFailed,
            ExternalToolFailure (ReloadFailed, VerifyFailed), WriteFailure,
            DecryptionError, CompensationFailure
        """
        with correlation_scope():
            plan: Optional[ApplyPlan] = None
            try:
                # Checked before locking so empty applies never contend
                async with self._session_factory() as db:
                    if await self.staging.count(db) == 0:
                        raise NothingToApply()

                async with self.lock.acquire("apply"):
                    self.failed_stage = None
                    self._set_state(ApplyState.LOCKED)
                    try:
                        self._set_state(ApplyState.MERGING)
                        async with self._session_factory() as db:
                            # Re-checked under the lock: a concurrent apply may have consumed the set
                            plan = await self._merge(db)
                        result = await self._apply_plan(plan, editor, notes)
                    except BaseException:
                        self._fail()
                        raise
                    finally:
                        self._set_state(ApplyState.IDLE)
            except Exception as e:
                await self.audit.record(
                    "apply", editor, succeeded=False,
                    summary=f"Apply failed: {e}",
                    diff=plan.diff if plan else None,
                    error=e,
                )
                raise

            await self.audit.record(
                "apply", editor, succeeded=True,
                summary=result.message,
                diff=plan.diff,
                resource_id=str(result.version_number),
            )
            return result

    async def _apply_plan(self, plan: ApplyPlan, editor: Editor, notes: Optional[str]) -> ApplyResult:
        self._set_state(ApplyState.VALIDATING)
        pending = await self._validate_candidate(plan.content)
        backups = await self._write(pending, plan.credentials_changed, plan.table_writes)

        try:
            vault_updates: Dict[str, Optional[str]] = {}
            if plan.credentials_changed:
                async with self._session_factory() as db:
                    vault_updates = await self._write_credentials(db, plan)
            await self._write_tables(plan.table_writes)
            await self._reload_and_verify()
            async with self._session_factory() as db:
                version_number = await self._commit_apply(db, plan, vault_updates, editor, notes)
        except Exception as e:
            self._fail()
            await self._compensate(backups, e)
            raise

        self._set_state(ApplyState.COMMITTED)
        applied_count = len(plan.staged)
        message = f"Applied {applied_count} change(s) as version {version_number}"
        logger.info(message)
        return ApplyResult(True, message, applied_count, version_number)

    async def _commit_apply(
        self,
        db: AsyncSession,
        plan: ApplyPlan,
        vault_updates: Dict[str, Optional[str]],
        editor: Editor,
        notes: Optional[str],
    ) -> int:
        """Record the version, update the vault and clear the merged entries in one transaction."""
        try:
            version = await self.versions.create_draft(db, plan.content, plan.snapshot, editor, notes)
            await self.versions.mark_applied(db, version.version_number, editor)
            for host, token in vault_updates.items():
                name = credential_secret_name(host)
                if token is None:
                    await self.vault.delete(db, name)
                else:
                    await self.vault.store_encrypted(db, name, token, editor.username)
            await self.staging.discard_entries(db, plan.staged)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise WriteFailure(f"Failed to record applied version: {e}") from e
        return version.version_number

    # =========================================================================
    # Rollback
    # =========================================================================

    async def rollback(self, version_number: int, editor: Editor) -> RollbackResult:
        """
        Make a stored version live again.

        The stored snapshot is checked by the MTA and written through the
        same states as an apply, together with any lookup table whose
        recorded entries differ from the live file. The credential file is
        left as it is. On success the target becomes the applied version and
        the staging set is cleared.
        """
        with correlation_scope():
            try:
                async with self.lock.acquire("rollback"):
                    self.failed_stage = None
                    self._set_state(ApplyState.LOCKED)
                    try:
                        result = await self._rollback_locked(version_number, editor)
                    except BaseException:
                        self._fail()
                        raise
                    finally:
                        self._set_state(ApplyState.IDLE)
            except Exception as e:
                await self.audit.record(
                    "rollback", editor, succeeded=False,
                    summary=f"Rollback to version {version_number} failed: {e}",
                    resource_id=str(version_number),
                    error=e,
                )
                raise

            await self.audit.record(
                "rollback", editor, succeeded=True,
                summary=result.message,
                resource_id=str(version_number),
            )
            return result

    async def _rollback_locked(self, version_number: int, editor: Editor) -> RollbackResult:
        async with self._session_factory() as db:
            self._set_state(ApplyState.MERGING)
            target = await self.versions.get(db, version_number)
            content = target.full_content

        snapshot = parse_main_cf(content)
        tables = self._snapshot_tables(target.parameters_json)
        checked = {k: v for k, v in snapshot.items() if k in PARAMETERS}
        # The snapshot ran before, so only the MTA check can block it
        for warning in validate_parameters({**checked, **tables}).errors:
            logger.warning(
                f"Version {version_number} value of {warning.field} does not pass validation: {warning.message}"
            )

        self._set_state(ApplyState.VALIDATING)
        pending = await self._validate_candidate(content)
        backups = await self._write(pending, credentials_changed=False, table_keys=tables)

        try:
            await self._write_tables(tables)
            await self._reload_and_verify()
            async with self._session_factory() as db:
                try:
                    await self.versions.mark_applied(db, version_number, editor)
                    discarded = await self.staging.discard_all(db)
                    await db.commit()
                except SQLAlchemyError as e:
                    await db.rollback()
                    raise WriteFailure(f"Failed to record rollback: {e}") from e
        except Exception as e:
            self._fail()
            await self._compensate(backups, e)
            raise

        self._set_state(ApplyState.COMMITTED)
        message = f"Rolled back to version {version_number}"
        if discarded:
            message += f" ({discarded} staged change(s) discarded)"
        logger.info(message)
        return RollbackResult(True, message, version_number)

    def _snapshot_tables(self, parameters_json: str) -> Dict[str, Optional[str]]:
        """Lookup tables whose recorded entries differ from the live files."""
        recorded = json.loads(parameters_json)
        live = self.files.read_tables()
        tables: Dict[str, Optional[str]] = {}
        for key in LOOKUP_TABLE_KEYS:
            value = recorded.get(key) or None
            if value != live.get(key):
                tables[key] = value
        return tables
