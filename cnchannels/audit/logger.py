"""Audit trail for webhook security outcomes.

JSON Lines, append-only, size-based rotation. Each line carries the
SHA-256 of the previous line in ``prev_hash`` so truncation or edits
show up in ``validate_audit_chain``.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path

from cnchannels.models import AuditEvent


@dataclass
class ChainValidationResult:
    valid: bool
    broken_at_line: int | None = None


def _digest(line: str) -> str:
    return hashlib.sha256(line.encode()).hexdigest()


def validate_audit_chain(log_path: Path) -> ChainValidationResult:
    """Check that every line's prev_hash matches the line before it."""
    lines = [line for line in log_path.read_text().splitlines() if line]
    previous: str | None = None
    for number, line in enumerate(lines, start=1):
        expected = _digest(previous) if previous is not None else None
        if json.loads(line).get("prev_hash") != expected:
            return ChainValidationResult(valid=False, broken_at_line=number)
        previous = line
    return ChainValidationResult(valid=True)


class AuditLogger:
    """Append-only audit logger with rotation and a hash chain."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._lock = threading.Lock()
        self._last_line: str | None = None
        if self.log_path.exists():
            existing = [line for line in self.log_path.read_text().splitlines() if line]
            if existing:
                self._last_line = existing[-1]

    @classmethod
    def from_env(cls, log_path: str) -> AuditLogger:
        return cls(
            log_path=log_path,
            max_bytes=int(os.environ.get("AUDIT_LOG_MAX_BYTES", "10485760")),
            backup_count=int(os.environ.get("AUDIT_LOG_BACKUP_COUNT", "5")),
        )

    def _backup(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _rotate_if_needed(self) -> None:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return
        self._backup(self._backup_count).unlink(missing_ok=True)
        for index in range(self._backup_count - 1, 0, -1):
            if self._backup(index).exists():
                self._backup(index).rename(self._backup(index + 1))
        self.log_path.rename(self._backup(1))
        # Each file holds its own chain.
        self._last_line = None

    def log(self, event: AuditEvent) -> None:
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            lock_path = self.log_path.parent / f".{self.log_path.name}.lock"
            with open(lock_path, "w") as lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    self._rotate_if_needed()
                    data = event.model_dump(mode="json")
                    data["prev_hash"] = (
                        _digest(self._last_line) if self._last_line is not None else None
                    )
                    line = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
                    with open(self.log_path, "a", encoding="utf-8") as handle:
                        handle.write(line + "\n")
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)
            self._last_line = line
