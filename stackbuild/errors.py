from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from .models import FileChangeRecord


class StackbuildError(RuntimeError):
    """Base class for every error raised by the pipeline engine."""


class DefinitionError(StackbuildError):
    """Raised when a pipeline definition file cannot be parsed or expanded."""


class InvalidRule(StackbuildError):
    """Raised when a patch rule is malformed or would not be idempotent."""


class CycleDetected(StackbuildError):
    """Raised when stage dependencies form a cycle."""

    def __init__(self, stages: Sequence[str]) -> None:
        self.stages = list(stages)
        super().__init__(f"Dependency cycle between stages: {', '.join(self.stages)}")


class EncodingError(StackbuildError):
    """Raised when a file under the patch root is not decodable text."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class PermissionDenied(StackbuildError):
    """Raised when a file under the patch root cannot be read or written.

    ``records`` lists the files already rewritten before the failure plus the
    failing file itself, so callers can still account for them.
    """

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        self.records: List["FileChangeRecord"] = []
        super().__init__(f"{path}: {reason}")


class WorkspaceBusy(StackbuildError):
    """Raised when another run holds the workspace lock."""

    def __init__(self, lock_path: str, holder: Optional[str] = None) -> None:
        self.lock_path = lock_path
        self.holder = holder
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Workspace is locked by another run: {lock_path}{detail}")


class StageExecutionError(StackbuildError):
    """A single failed attempt of a stage."""

    def __init__(self, stage: str, returncode: int, stderr_tail: str = "") -> None:
        self.stage = stage
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        message = f"Stage {stage} exited with status {returncode}"
        if stderr_tail:
            message += f"\n{stderr_tail}"
        super().__init__(message)


class RetriesExhausted(StackbuildError):
    """Raised once a stage has failed on every permitted attempt."""

    def __init__(self, last_error: StageExecutionError, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"Stage {last_error.stage} failed after {attempts} attempt(s): "
            f"exit status {last_error.returncode}"
        )
