"""Append-only JSON Lines record of relay events with size-based rotation."""

from __future__ import annotations

import fcntl
import json
from pathlib import Path

from src.config import RelaySettings
from src.models import AuditEvent


class AuditLogger:
    """Appends one JSON object per event; rotates to ``<name>.1 .. <name>.N``."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> AuditLogger | None:
        if not settings.audit_log_path:
            return None
        return cls(
            log_path=settings.audit_log_path,
            max_bytes=settings.audit_log_max_bytes,
            backup_count=settings.audit_log_backup_count,
        )

    def _backup(self, index: int) -> Path:
        return self.log_path.parent / f"{self.log_path.name}.{index}"

    def _maybe_rotate(self) -> None:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return

        self._backup(self._backup_count).unlink(missing_ok=True)
        for index in range(self._backup_count - 1, 0, -1):
            if self._backup(index).exists():
                self._backup(index).rename(self._backup(index + 1))
        self.log_path.rename(self._backup(1))

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(json.loads(event.model_dump_json()), separators=(",", ":"))

        # Several workers may share one log file
        lock_file = self.log_path.parent / f".{self.log_path.name}.lock"
        with open(lock_file, "w") as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                self._maybe_rotate()
                with open(self.log_path, "a") as f:
                    f.write(line + "\n")
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)

    def read_events(self) -> list[AuditEvent]:
        """Return the events in the current (unrotated) log file."""
        if not self.log_path.exists():
            return []
        return [
            AuditEvent.model_validate_json(line)
            for line in self.log_path.read_text().splitlines()
            if line.strip()
        ]
