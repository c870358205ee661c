"""Apply ordered, idempotent text substitutions to a tree of manifest files."""

from __future__ import annotations

import errno
import fnmatch
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import EncodingError, InvalidRule, PermissionDenied
from .models import FileChangeRecord, PatchRule, PatchRuleSet

LOG = logging.getLogger("stackbuild.patcher")

SNIFF_BYTES = 8192


@dataclass
class _PlannedWrite:
    path: Path
    original: bytes
    updated: bytes
    record: FileChangeRecord


class ManifestPatcher:
    """Rewrite text files under a root directory according to a rule set.

    Every file is planned before anything is written, so a rule that turns out
    not to be idempotent aborts the pass with no file modified.  ``dry_run``
    stops after planning and returns exactly the records a real pass would.
    """

    def __init__(
        self,
        *,
        strict: bool = False,
        dry_run: bool = False,
        backup_suffix: Optional[str] = None,
        exclude: Sequence[str] = (),
        encoding: str = "utf-8",
    ) -> None:
        self.strict = strict
        self.dry_run = dry_run
        self.backup_suffix = backup_suffix
        self.exclude = tuple(exclude)
        self.encoding = encoding

    def apply(self, root: str | Path, rule_set: PatchRuleSet) -> List[FileChangeRecord]:
        root_path = Path(root).resolve()
        if not root_path.is_dir():
            raise FileNotFoundError(f"Patch root {root_path} is not a directory")

        rules = rule_set.rules()
        candidates = list(self._iter_files(root_path))
        self._check_scopes(root_path, rules, [relative for _, relative in candidates])

        records: List[FileChangeRecord] = []
        planned: List[_PlannedWrite] = []
        for path, relative in candidates:
            applicable = [rule for rule in rules if rule.applies_to(relative)]
            if not applicable:
                continue
            if path.is_symlink():
                records.append(FileChangeRecord(relative, status="skipped", reason="symlink escapes patch root"))
                LOG.warning("Skipping %s: symlink escapes %s", relative, root_path)
                continue
            try:
                original = path.read_bytes()
            except PermissionError as exc:
                records.append(self._permission_failure(relative, f"cannot read: {exc.strerror}"))
                continue
            try:
                text = self._decode(relative, original)
            except EncodingError as exc:
                LOG.debug("Skipping %s: %s", relative, exc.reason)
                records.append(
                    FileChangeRecord(
                        relative,
                        bytes_before=len(original),
                        bytes_after=len(original),
                        status="skipped",
                        reason=exc.reason,
                    )
                )
                continue

            updated_text, applied = _fold(relative, text, applicable)
            if not applied:
                continue
            updated = updated_text.encode(self.encoding)
            record = FileChangeRecord(
                relative,
                rules_applied=applied,
                bytes_before=len(original),
                bytes_after=len(updated),
            )
            planned.append(_PlannedWrite(path, original, updated, record))
            records.append(record)

        if not self.dry_run:
            for index, write in enumerate(planned):
                try:
                    self._write(write, records)
                except PermissionDenied as exc:
                    exc.records = [done.record for done in planned[:index]]
                    exc.records.append(FileChangeRecord(write.record.path, status="error", reason=exc.reason))
                    raise

        records.sort(key=lambda record: record.path)
        changed = sum(1 for record in records if record.changed)
        LOG.info(
            "%s %d file(s) under %s with rule set %s",
            "Would patch" if self.dry_run else "Patched",
            changed,
            root_path,
            rule_set.name,
        )
        return records

    def _iter_files(self, root: Path) -> Iterator[Tuple[Path, str]]:
        for directory, dirnames, filenames in os.walk(root, followlinks=False):
            base = Path(directory)
            dirnames[:] = sorted(
                name for name in dirnames if not self._excluded((base / name).relative_to(root).as_posix())
            )
            for name in sorted(filenames):
                path = base / name
                relative = path.relative_to(root).as_posix()
                if self._excluded(relative):
                    continue
                if self.backup_suffix and name.endswith(self.backup_suffix):
                    continue
                if path.is_symlink():
                    if _escapes(root, path):
                        yield path, relative
                    # targets inside the root are visited directly
                    continue
                if path.is_file():
                    yield path, relative

    def _excluded(self, relative: str) -> bool:
        return any(fnmatch.fnmatchcase(relative, pattern) for pattern in self.exclude)

    def _check_scopes(self, root: Path, rules: Iterable[PatchRule], relatives: Sequence[str]) -> None:
        for rule in rules:
            if not any(rule.applies_to(relative) for relative in relatives):
                raise InvalidRule(f"Rule {rule.id} scope {rule.scope!r} matches no file under {root}")

    def _decode(self, relative: str, data: bytes) -> str:
        if b"\x00" in data[:SNIFF_BYTES]:
            raise EncodingError(relative, "binary content")
        try:
            return data.decode(self.encoding)
        except UnicodeDecodeError as exc:
            raise EncodingError(relative, f"not valid {self.encoding}: {exc.reason}") from exc

    def _write(self, write: _PlannedWrite, records: List[FileChangeRecord]) -> None:
        try:
            if self.backup_suffix:
                backup = write.path.with_name(write.path.name + self.backup_suffix)
                _write_atomic(backup, write.original, mode_from=write.path)
            _write_atomic(write.path, write.updated, mode_from=write.path)
        except PermissionError as exc:
            failure = self._permission_failure(write.record.path, f"cannot write: {exc.strerror}")
            records[records.index(write.record)] = failure
            return
        LOG.info("Patched %s (%s)", write.record.path, ", ".join(write.record.rules_applied))

    def _permission_failure(self, relative: str, reason: str) -> FileChangeRecord:
        if self.strict:
            raise PermissionDenied(relative, reason)
        LOG.warning("Permission denied for %s: %s", relative, reason)
        return FileChangeRecord(relative, status="error", reason=reason)


def _fold(relative: str, text: str, rules: Sequence[PatchRule]) -> Tuple[str, List[str]]:
    applied: List[str] = []
    current = text
    for rule in rules:
        updated = rule.apply(current)
        if updated == current:
            continue
        if rule.apply(updated) != updated:
            raise InvalidRule(f"Rule {rule.id} is not idempotent on {relative}: it rewrites its own output")
        applied.append(rule.id)
        current = updated
    if applied:
        for rule in rules:
            if rule.apply(current) != current:
                raise InvalidRule(
                    f"Rule {rule.id} matches again on {relative} after later rules ran; reorder the rule set"
                )
    return current, applied


def _escapes(root: Path, path: Path) -> bool:
    try:
        path.resolve().relative_to(root)
    except ValueError:
        return True
    return False


def _write_atomic(path: Path, data: bytes, *, mode_from: Path) -> None:
    """Replace ``path`` through a temporary sibling so it is never left half written."""

    if path.exists() and not os.access(path, os.W_OK):
        raise PermissionError(errno.EACCES, os.strerror(errno.EACCES), str(path))
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        shutil.copymode(mode_from, temp)
        os.replace(temp, path)
    except BaseException:
        temp.unlink(missing_ok=True)
        raise
