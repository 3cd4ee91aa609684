"""
Postfix command invocation: configuration check, reload, status and postmap.

Every command runs as a subprocess with a hard timeout. A command that hangs
is killed and reported as a failure, never retried, so the apply lock is
not held indefinitely.
"""
import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Type

from loguru import logger

from relayconf.config import CommandConfig
from relayconf.exceptions import ExternalToolFailure, ReloadFailed, VerifyFailed
from relayconf.utils.validation import FieldError

# "postconf: fatal: ..." / "postfix/postfix-script: error: ..." / "warning: ..."
_DIAGNOSTIC_RE = re.compile(r"^(?:[\w./-]+:\s+)?(fatal|error|warning|panic):\s*(.*)$", re.IGNORECASE)
_PARAM_IN_MESSAGE_RE = re.compile(r"\b([a-z][a-z0-9_]*[a-z0-9])\s*=|parameter\s+\"?([a-z][a-z0-9_]*)")


@dataclass(frozen=True)
class CommandResult:
    command: List[str]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def parse_check_output(output: str) -> List[FieldError]:
    """
    Extract fatal/error diagnostics from Postfix tool output.

    The field is the parameter name when the message names one, otherwise
    "main.cf".
    """
    errors = []
    for line in output.splitlines():
        match = _DIAGNOSTIC_RE.match(line.strip())
        if not match or match.group(1).lower() not in ("fatal", "error", "panic"):
            continue
        message = match.group(2).strip()
        field_match = _PARAM_IN_MESSAGE_RE.search(message)
        field = (field_match.group(1) or field_match.group(2)) if field_match else "main.cf"
        errors.append(FieldError(field, message))
    return errors


def _expand(template: Sequence[str], **values: str) -> List[str]:
    expanded = []
    for arg in template:
        for name, value in values.items():
            arg = arg.replace("{" + name + "}", value)
        expanded.append(arg)
    return expanded


class PostfixController:
    """Runs the configured Postfix commands."""

    def __init__(self, commands: CommandConfig):
        self.commands = commands

    async def run(self, command: Sequence[str], failure: Type[ExternalToolFailure] = ExternalToolFailure) -> CommandResult:
        """
        Run a command and capture combined stdout/stderr.

        Raises:
            failure: If the command cannot be started or exceeds the timeout.
                A non-zero exit is returned, not raised.
        """
        command = list(command)
        timeout = self.commands.timeout_seconds
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.error(f"Failed to start {command[0]}: {e}")
            raise failure(command, None, str(e), f"Could not run '{command[0]}': {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"'{' '.join(command)}' timed out after {timeout}s")
            raise failure(command, None, "", f"'{' '.join(command)}' timed out after {timeout}s") from None

        output = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            logger.warning(f"'{' '.join(command)}' exited with {process.returncode}: {output}")
        else:
            logger.debug(f"'{' '.join(command)}' succeeded")
        return CommandResult(command=command, returncode=process.returncode, output=output)

    async def check(self, config_dir: Path) -> List[FieldError]:
        """
        Run every check command against a configuration directory.

        Returns the diagnostics of the first failing command; an empty list
        means the configuration passed. A command that exits non-zero
        without parseable diagnostics yields one error carrying its output.
        """
        for template in self.commands.check:
            result = await self.run(_expand(template, config_dir=str(config_dir)))
            errors = parse_check_output(result.output)
            if not result.ok:
                return errors or [FieldError("main.cf", result.output or f"exit status {result.returncode}")]
            if errors:
                return errors
        return []

    async def reload(self) -> None:
        result = await self.run(self.commands.reload, ReloadFailed)
        if not result.ok:
            raise ReloadFailed(result.command, result.returncode, result.output)
        logger.info("Postfix reloaded")

    async def status(self) -> None:
        """Single status poll; raises VerifyFailed unless Postfix reports running."""
        result = await self.run(self.commands.status, VerifyFailed)
        if not result.ok:
            raise VerifyFailed(result.command, result.returncode, result.output)

    async def is_running(self) -> bool:
        try:
            await self.status()
        except ExternalToolFailure:
            return False
        return True

    async def postmap(self, path: Path) -> None:
        result = await self.run(_expand(self.commands.postmap, path=str(path)))
        if not result.ok:
            raise ExternalToolFailure(result.command, result.returncode, result.output)
        logger.debug(f"postmap rebuilt {path}")
