from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest


class FakeCommandRunner:
    """Stands in for ``run_command``; exit codes are scripted per binary."""

    def __init__(self, outcomes: Optional[Dict[str, Sequence[int]]] = None) -> None:
        self.outcomes = {name: list(codes) for name, codes in (outcomes or {}).items()}
        self.calls: List[Dict[str, object]] = []
        self.hooks: Dict[str, Callable[[], None]] = {}
        self._lock = threading.Lock()

    def __call__(
        self,
        command: Sequence[str],
        *,
        cwd=None,
        env=None,
        timeout=None,
        cancel_event: Optional[threading.Event] = None,
    ) -> subprocess.CompletedProcess:
        binary = command[0]
        with self._lock:
            self.calls.append({"command": list(command), "cwd": cwd, "env": dict(env or {})})
            codes = self.outcomes.get(binary, [])
            returncode = codes.pop(0) if codes else 0
        hook = self.hooks.get(binary)
        if hook is not None:
            hook()
        stderr = f"{binary} failed\n" if returncode else ""
        return subprocess.CompletedProcess(list(command), returncode, f"{binary} output\n", stderr)

    def binaries(self) -> List[str]:
        return [call["command"][0] for call in self.calls]  # type: ignore[index]


@pytest.fixture
def fake_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def manifest_tree(tmp_path: Path) -> Path:
    root = tmp_path / "workspace" / ".repo"
    manifests = root / "manifests"
    manifests.mkdir(parents=True)
    (manifests / "pinned-n1sdp.xml").write_text(
        '<manifest>\n'
        '  <project name="edk2" revision="edk2-stable202405"/>\n'
        '  <project name="ARM-software/SCP-firmware" revision="refs/tags/v2.14.0"/>\n'
        '</manifest>\n'
    )
    (manifests / "default.xml").write_text('<manifest>\n  <project name="grub" revision="master"/>\n</manifest>\n')
    (manifests / "objects.xml").write_bytes(b"\x00\x01refs/tags/v2.14.0\x00binary")
    (root / "README").write_text("refs/tags/v2.14.0 is mentioned outside the manifests\n")
    return root
