from __future__ import annotations

import logging
import os
import socket
import threading
from pathlib import Path
from typing import Optional

from .errors import WorkspaceBusy

LOG = logging.getLogger("stackbuild.lock")

LOCK_FILENAME = ".stackbuild.lock"


class WorkspaceLock:
    """Advisory lock file guarding a workspace root for one run.

    The file is created with ``O_EXCL`` and holds ``pid@host``.  A lock left by
    a dead process on this host is reclaimed; any other holder makes
    :meth:`acquire` fail immediately with :class:`WorkspaceBusy`.
    """

    def __init__(self, workspace: str | Path) -> None:
        self.path = Path(workspace) / LOCK_FILENAME
        self._held = False
        self._token = f"{os.getpid()}@{socket.gethostname()}"

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> "WorkspaceLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._read_holder()
                if holder is not None and _is_stale(holder) and self._reclaim(holder):
                    continue
                raise WorkspaceBusy(str(self.path), self._read_holder() or holder)
            with os.fdopen(fd, "w") as handle:
                handle.write(self._token + "\n")
            self._held = True
            LOG.debug("Acquired workspace lock %s", self.path)
            return self
        raise WorkspaceBusy(str(self.path), self._read_holder())

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self._read_holder() != self._token:
            LOG.warning("Workspace lock %s no longer holds our token; leaving it in place", self.path)
            return
        self.path.unlink(missing_ok=True)
        LOG.debug("Released workspace lock %s", self.path)

    def _reclaim(self, holder: str) -> bool:
        """Move a stale lock aside and drop it only if it still names ``holder``.

        The rename is atomic, so of several runs reclaiming the same stale lock
        only one moves it.  A run that finds a live token instead puts it back.
        """

        claimed = self.path.with_name(f"{self.path.name}.{os.getpid()}-{threading.get_ident()}.stale")
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            return True
        try:
            current = claimed.read_text().strip()
        except OSError:
            current = None
        if current == holder:
            LOG.warning("Removing stale workspace lock %s held by %s", self.path, holder)
            claimed.unlink(missing_ok=True)
            return True
        try:
            os.link(claimed, self.path)
        except FileExistsError:
            LOG.error("Workspace lock %s was replaced while reclaiming it", self.path)
        claimed.unlink(missing_ok=True)
        return False

    def __enter__(self) -> "WorkspaceLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def _read_holder(self) -> Optional[str]:
        try:
            return self.path.read_text().strip() or None
        except OSError:
            return None


def _is_stale(holder: str) -> bool:
    pid_text, _, host = holder.partition("@")
    if host != socket.gethostname():
        return False
    try:
        pid = int(pid_text)
    except ValueError:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    except PermissionError:
        return False
    return False
