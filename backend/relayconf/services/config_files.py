"""
main.cf parsing and rendering, and the filesystem side of an apply.

Every write into the Postfix directory goes through a temporary file in the
same directory followed by os.replace, so readers (and Postfix itself) see
either the old or the new file, never a partial one.
"""
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from loguru import logger

from relayconf.config import PostfixConfig
from relayconf.constants import BACKUP_TIMESTAMP_FORMAT, MIN_FREE_BYTES, PENDING_DIR_PREFIX
from relayconf.database import utcnow
from relayconf.exceptions import WriteFailure
from relayconf.parameters import (
    CATEGORIES,
    LOOKUP_TABLE_KEYS,
    PARAMETERS,
    TARGET_MAIN_CF,
    canonicalise,
    main_cf_keys,
)
from relayconf.services.secret_vault import scrub

SECTION_TITLES = {
    "general": "General",
    "relay": "Relay",
    "tls": "TLS",
    "authentication": "SASL authentication",
    "restrictions": "Restrictions",
}

HEADER = (
    "# Postfix main.cf - managed by relayconf\n"
    "# Local edits are replaced on the next apply or rollback.\n"
)

TABLE_HEADER = (
    "# Postfix lookup table - managed by relayconf\n"
    "# Local edits are replaced on the next apply or rollback.\n"
)

# postmap output suffix per lookup table type
MAP_SUFFIXES = {"hash": ".db", "btree": ".db", "lmdb": ".lmdb", "cdb": ".cdb"}

_PARAM_LINE = re.compile(r"^([A-Za-z0-9_]+)\s*=\s?(.*)$")


# =============================================================================
# main.cf grammar
# =============================================================================

def parse_main_cf(text: str) -> Dict[str, str]:
    """
    Parse main.cf into parameter values.

    Comment and blank lines are skipped; a line starting with whitespace
    continues the previous parameter. Managed list parameters are returned
    in canonical one-entry-per-line form.
    """
    raw: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if line[0].isspace():
            if current is None:
                logger.warning(f"main.cf line {number}: continuation without a parameter, ignored")
                continue
            raw[current].append(stripped)
            continue
        match = _PARAM_LINE.match(line.rstrip())
        if not match:
            logger.warning(f"main.cf line {number}: not a parameter assignment, ignored")
            current = None
            continue
        current = match.group(1)
        # Later assignments override earlier ones, as in Postfix
        raw[current] = [match.group(2).strip()] if match.group(2).strip() else []

    params = {}
    for key, parts in raw.items():
        value = " ".join(parts)
        spec = PARAMETERS.get(key)
        params[key] = canonicalise(key, value) if spec and spec.target == TARGET_MAIN_CF else value
    return params


def _render_line(key: str, value: str) -> str:
    if value == "":
        return f"{key} ="
    spec = PARAMETERS.get(key)
    if spec is not None and spec.multiline:
        entries = [e for e in value.split("\n") if e.strip()]
        return f"{key} = " + ",\n    ".join(entries)
    return f"{key} = {value}"


def render_main_cf(params: Mapping[str, Optional[str]]) -> str:
    """
    Render parameters as main.cf text.

    Output depends only on the parameter values: managed keys appear in
    category order, everything else follows sorted by name. None values are
    left out so Postfix falls back to its default.
    """
    lines = [HEADER]
    for category in CATEGORIES:
        keys = [k for k in main_cf_keys(category) if params.get(k) is not None]
        if not keys:
            continue
        lines.append(f"# {SECTION_TITLES[category]}")
        lines.extend(_render_line(k, params[k]) for k in keys)
        lines.append("")

    managed = set(main_cf_keys())
    other = sorted(
        k for k, v in params.items()
        if k not in managed and v is not None and PARAMETERS.get(k) is None
    )
    if other:
        lines.append("# Other")
        lines.extend(_render_line(k, params[k]) for k in other)
        lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"


# =============================================================================
# Filesystem operations
# =============================================================================

@dataclass(frozen=True)
class FileBackup:
    """A live file and its backup copy; backup_path is None if the file did not exist."""
    target: Path
    backup_path: Optional[Path]


class ConfigFiles:
    """Pending copies, backups, promotion and restore for the Postfix directory."""

    def __init__(self, postfix: PostfixConfig, min_free_bytes: int = MIN_FREE_BYTES):
        self.postfix = postfix
        self.config_dir = Path(postfix.config_dir)
        self.backup_dir = Path(postfix.backup_dir)
        self.min_free_bytes = min_free_bytes

    @property
    def main_cf(self) -> Path:
        return self.postfix.main_cf_path

    @property
    def credentials_file(self) -> Path:
        return self.postfix.credentials_path

    @property
    def credentials_map_file(self) -> Path:
        suffix = MAP_SUFFIXES.get(self.postfix.credentials_map_type, ".db")
        return self.credentials_file.with_name(self.credentials_file.name + suffix)

    # -- reading -------------------------------------------------------------

    def read_live_text(self) -> Optional[str]:
        try:
            return self.main_cf.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def read_live(self) -> Dict[str, str]:
        text = self.read_live_text()
        return parse_main_cf(text) if text is not None else {}

    # -- pending -------------------------------------------------------------

    def check_free_space(self) -> None:
        try:
            free = shutil.disk_usage(self.config_dir).free
        except OSError as e:
            raise WriteFailure(f"Cannot stat {self.config_dir}: {e}") from e
        if free < self.min_free_bytes:
            raise WriteFailure(
                f"Only {free} bytes free in {self.config_dir}, need {self.min_free_bytes}"
            )

    def create_pending(self, content: str) -> Path:
        """
        Write a candidate main.cf into a fresh pending directory.

        The directory lives inside the config directory so the later rename
        stays on one filesystem. master.cf is copied alongside so the
        Postfix check sees a complete configuration.
        """
        self.check_free_space()
        pending_dir = None
        try:
            pending_dir = Path(tempfile.mkdtemp(prefix=PENDING_DIR_PREFIX, dir=self.config_dir))
            candidate = pending_dir / self.postfix.main_cf_name
            candidate.write_text(content, encoding="utf-8")
            candidate.chmod(self._live_mode(self.main_cf, 0o644))
            if self.postfix.master_cf_path.exists():
                shutil.copy2(self.postfix.master_cf_path, pending_dir / self.postfix.master_cf_name)
            return pending_dir
        except OSError as e:
            if pending_dir is not None:
                self.remove_pending(pending_dir)
            raise WriteFailure(f"Failed to write pending configuration: {e}") from e

    def remove_pending(self, pending_dir: Path) -> None:
        try:
            shutil.rmtree(pending_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove pending directory {pending_dir}: {e}")

    def promote(self, pending_dir: Path) -> None:
        """Atomically rename the pending main.cf onto the live path."""
        try:
            os.replace(pending_dir / self.postfix.main_cf_name, self.main_cf)
        except OSError as e:
            raise WriteFailure(f"Failed to replace {self.main_cf}: {e}") from e
        logger.info(f"Promoted candidate configuration to {self.main_cf}")

    # -- backups -------------------------------------------------------------

    def backup(self, target: Path) -> FileBackup:
        """Copy a live file to a timestamped backup (no-op record if it does not exist)."""
        if not target.exists():
            return FileBackup(target=target, backup_path=None)
        stamp = utcnow().strftime(BACKUP_TIMESTAMP_FORMAT)
        backup_path = self.backup_dir / f"{target.name}.{stamp}"
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            self._atomic_copy(target, backup_path)
        except OSError as e:
            raise WriteFailure(f"Failed to back up {target}: {e}") from e
        logger.debug(f"Backed up {target} to {backup_path}")
        return FileBackup(target=target, backup_path=backup_path)

    def restore(self, backup: FileBackup) -> None:
        """
        Put a backed-up file back in place.

        OSError propagates: a failed restore is a compensation failure.
        """
        if backup.backup_path is None:
            if backup.target.exists():
                backup.target.unlink()
                logger.info(f"Removed {backup.target} (did not exist before apply)")
            return
        self._atomic_copy(backup.backup_path, backup.target)
        logger.info(f"Restored {backup.target} from {backup.backup_path}")

    def prune_backups(self, keep: int) -> int:
        """Keep the newest `keep` backups per managed file; returns the number removed."""
        if not self.backup_dir.exists():
            return 0
        removed = 0
        names = [self.postfix.main_cf_name, self.credentials_file.name, self.credentials_map_file.name]
        for key in LOOKUP_TABLE_KEYS:
            names.extend((self.table_file(key).name, self.table_map_file(key).name))
        for name in names:
            backups = sorted(self.backup_dir.glob(f"{name}.[0-9]*"), reverse=True)
            for stale in backups[keep:]:
                try:
                    stale.unlink()
                    removed += 1
                except OSError as e:
                    logger.warning(f"Failed to delete old backup {stale}: {e}")
        return removed

    # -- credentials ---------------------------------------------------------

    def write_credentials(self, entries: Iterable[Tuple[str, bytearray]]) -> None:
        """
        Write the SASL credential file (mode 0600).

        Each entry is (relay host, b"username:password"). The assembled
        buffer and every entry buffer are zeroed before returning.
        """
        buffer = bytearray()
        entry_buffers = []
        try:
            for host, credential in entries:
                entry_buffers.append(credential)
                buffer += host.encode("utf-8") + b" " + credential + b"\n"
            self._atomic_write(self.credentials_file, buffer, 0o600)
        except OSError as e:
            raise WriteFailure(f"Failed to write {self.credentials_file}: {e}") from e
        finally:
            scrub(buffer)
            for credential in entry_buffers:
                scrub(credential)
        logger.info(f"Wrote {len(entry_buffers)} relay credential(s) to {self.credentials_file}")

    # -- lookup tables -------------------------------------------------------

    def table_file(self, key: str) -> Path:
        return self.config_dir / PARAMETERS[key].table.file_name

    def table_map_file(self, key: str) -> Path:
        path = self.table_file(key)
        return path.with_name(path.name + MAP_SUFFIXES.get(self.postfix.table_map_type, ".db"))

    def table_reference(self, key: str) -> str:
        """main.cf value pointing Postfix at the managed table for a lookup key."""
        return f"{self.postfix.table_map_type}:{self.table_file(key)}"

    def read_table(self, key: str) -> Optional[str]:
        """Live table entries in canonical form; None when the file is missing or empty."""
        try:
            text = self.table_file(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        lines = [line for line in text.splitlines() if line.strip() and not line.strip().startswith("#")]
        return canonicalise(key, "\n".join(lines)) or None

    def read_tables(self) -> Dict[str, str]:
        tables = {}
        for key in LOOKUP_TABLE_KEYS:
            value = self.read_table(key)
            if value is not None:
                tables[key] = value
        return tables

    def write_table(self, key: str, value: Optional[str]) -> Path:
        """Write a lookup table source file; None or "" leaves only the header."""
        path = self.table_file(key)
        lines = []
        for entry in (value or "").split("\n"):
            parts = entry.split(None, 1)
            if len(parts) == 2:
                lines.append(f"{parts[0]}\t{parts[1]}")
        content = TABLE_HEADER + "".join(line + "\n" for line in lines)
        try:
            self._atomic_write(path, bytearray(content.encode("utf-8")), self._live_mode(path, 0o644))
        except OSError as e:
            raise WriteFailure(f"Failed to write {path}: {e}") from e
        logger.info(f"Wrote {len(lines)} entr{'y' if len(lines) == 1 else 'ies'} to {path}")
        return path

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _live_mode(path: Path, default: int) -> int:
        try:
            return path.stat().st_mode & 0o777
        except FileNotFoundError:
            return default

    def _atomic_copy(self, source: Path, destination: Path) -> None:
        fd, temp_path = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.")
        try:
            with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
                shutil.copyfileobj(src, out)
                out.flush()
                os.fsync(out.fileno())
            shutil.copymode(source, temp_path)
            os.replace(temp_path, destination)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def _atomic_write(self, destination: Path, content: bytearray, mode: int) -> None:
        fd, temp_path = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.")
        try:
            # Set permissions before any content is written
            os.fchmod(fd, mode)
            with os.fdopen(fd, "wb") as out:
                out.write(content)
                out.flush()
                os.fsync(out.fileno())
            os.replace(temp_path, destination)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
