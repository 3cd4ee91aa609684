"""
Exception taxonomy for the staging and apply engine.

Every failure the engine reports is a ConfigEngineError subclass carrying an
ErrorCode and an HTTP status, so the API layer needs no per-endpoint mapping.
"""
from typing import Any, Dict, List, Optional, Sequence

from relayconf.utils.errors import ErrorCode
from relayconf.utils.validation import FieldError


class ConfigEngineError(Exception):
    """Base class for engine errors."""

    code = ErrorCode.INTERNAL_ERROR
    status_code = 500

    def details(self) -> Optional[Dict[str, Any]]:
        return None


class ValidationError(ConfigEngineError):
    """One or more parameter values were rejected by the validator."""

    code = ErrorCode.VALIDATION_ERROR
    status_code = 422

    def __init__(self, errors: Sequence[FieldError], message: str = "Validation failed"):
        self.errors: List[FieldError] = list(errors)
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {"errors": [e.to_dict() for e in self.errors]}


class ValidationFailed(ConfigEngineError):
    """The MTA's own configuration check rejected the candidate file."""

    code = ErrorCode.MTA_VALIDATION_FAILED
    status_code = 422

    def __init__(self, errors: Sequence[FieldError]):
        self.errors: List[FieldError] = list(errors)
        super().__init__("Postfix rejected the candidate configuration")

    def details(self) -> Dict[str, Any]:
        return {"errors": [e.to_dict() for e in self.errors]}


class NothingToApply(ConfigEngineError):
    code = ErrorCode.NOTHING_TO_APPLY
    status_code = 409

    def __init__(self, message: str = "No staged changes to apply"):
        super().__init__(message)


class Busy(ConfigEngineError):
    """Another apply or rollback holds the lock."""

    code = ErrorCode.BUSY
    status_code = 423

    def __init__(self, message: str = "Another configuration operation is in progress"):
        super().__init__(message)


class NotFound(ConfigEngineError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class DecryptionError(ConfigEngineError):
    """A vault record could not be decrypted (corrupt or master secret changed)."""

    code = ErrorCode.DECRYPTION_FAILED


class WriteFailure(ConfigEngineError):
    """Writing, backing up or promoting a configuration file failed."""

    code = ErrorCode.WRITE_FAILURE


class ExternalToolFailure(ConfigEngineError):
    """A Postfix command failed, timed out or could not be started."""

    code = ErrorCode.EXTERNAL_TOOL_FAILURE
    status_code = 502

    def __init__(self, command: Sequence[str], returncode: Optional[int], output: str, message: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        if not message:
            if returncode is None:
                message = f"'{' '.join(self.command)}' did not complete"
            else:
                message = f"'{' '.join(self.command)}' exited with status {returncode}"
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {"command": self.command, "returncode": self.returncode, "output": self.output}


class ReloadFailed(ExternalToolFailure):
    code = ErrorCode.RELOAD_FAILED


class VerifyFailed(ExternalToolFailure):
    code = ErrorCode.VERIFY_FAILED


class CompensationFailure(ConfigEngineError):
    """
    Restoring the previous configuration failed after a failed apply.

    The live MTA state is unknown and needs operator attention.
    """

    code = ErrorCode.COMPENSATION_FAILED

    def __init__(self, original: BaseException, cause: BaseException):
        self.original = original
        self.cause = cause
        super().__init__(
            f"Restore after failed apply did not complete: {cause} "
            f"(original failure: {original})"
        )

    def details(self) -> Dict[str, Any]:
        return {
            "original_error": type(self.original).__name__,
            "original_message": str(self.original),
            "compensation_error": type(self.cause).__name__,
            "compensation_message": str(self.cause),
        }
