from __future__ import annotations

import json
import os
import subprocess
import threading
import time
from pathlib import Path
from typing import Mapping, Optional, Sequence

TIMEOUT_EXIT_STATUS = 124
POLL_INTERVAL_S = 0.1


def run_command(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> subprocess.CompletedProcess[str]:
    """Execute a subprocess command and return the completed process.

    The child is polled so that ``cancel_event`` can terminate it mid-flight.
    A run that exceeds ``timeout`` is terminated and reported with exit status
    124, matching coreutils ``timeout``.  Output is decoded as UTF-8 with
    undecodable bytes replaced.
    A non-zero exit status is returned, not raised.
    """

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    process = subprocess.Popen(
        list(command),
        cwd=str(cwd) if cwd else None,
        env=process_env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        encoding="utf-8",
        errors="replace",
    )
    deadline = time.monotonic() + timeout if timeout is not None else None
    timed_out = False
    while True:
        try:
            stdout, stderr = process.communicate(timeout=POLL_INTERVAL_S)
            break
        except subprocess.TimeoutExpired:
            expired = deadline is not None and time.monotonic() >= deadline
            if expired or (cancel_event is not None and cancel_event.is_set()):
                timed_out = expired
                stdout, stderr = _terminate(process)
                break

    returncode = TIMEOUT_EXIT_STATUS if timed_out else process.returncode
    return subprocess.CompletedProcess(list(command), returncode, stdout or "", stderr or "")


def _terminate(process: subprocess.Popen, grace_s: float = 5.0) -> tuple[str, str]:
    process.terminate()
    try:
        return process.communicate(timeout=grace_s)
    except subprocess.TimeoutExpired:
        process.kill()
        return process.communicate()


def tail(text: str, lines: int = 20) -> str:
    """Return the last ``lines`` lines of ``text``."""

    return "\n".join(text.rstrip().splitlines()[-lines:])


def ensure_directory(path: str | Path) -> Path:
    """Create a directory and return its Path object."""

    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def dump_json(path: str | Path, payload: Mapping[str, object], *, indent: int = 2) -> None:
    """Write structured JSON to disk with a trailing newline for readability."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=indent, sort_keys=True) + "\n")
