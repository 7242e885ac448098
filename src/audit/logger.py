"""Webhook audit trail: append-only JSON Lines with rotation and hash chain."""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path

from src.models import AuditEvent, AuditEventType, RiskLevel, WebhookKey


@dataclass
class ChainValidationResult:
    valid: bool
    broken_at_line: int | None = None
    entries: int = 0


def validate_audit_chain(log_path: Path) -> ChainValidationResult:
    """Check that every entry's ``prev_hash`` is the SHA-256 of the line before it."""
    text = log_path.read_text().strip() if log_path.exists() else ""
    if not text:
        return ChainValidationResult(valid=True)

    lines = text.split("\n")
    prev_line: str | None = None
    for lineno, line in enumerate(lines, start=1):
        entry = json.loads(line)
        expected = hashlib.sha256(prev_line.encode()).hexdigest() if prev_line else None
        if entry.get("prev_hash") != expected:
            return ChainValidationResult(valid=False, broken_at_line=lineno, entries=len(lines))
        prev_line = line

    return ChainValidationResult(valid=True, entries=len(lines))


class AuditLogger:
    """Append-only audit log of capture and processing outcomes."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._last_line: str | None = None
        # Resume the hash chain from an existing file
        if self.log_path.exists() and self.log_path.stat().st_size > 0:
            text = self.log_path.read_text().strip()
            if text:
                self._last_line = text.split("\n")[-1]

    @classmethod
    def from_env(cls, log_path: str) -> AuditLogger:
        """Create AuditLogger with rotation settings from environment variables."""
        max_bytes = int(os.environ.get("AUDIT_LOG_MAX_BYTES", "10485760"))
        backup_count = int(os.environ.get("AUDIT_LOG_BACKUP_COUNT", "5"))
        return cls(log_path=log_path, max_bytes=max_bytes, backup_count=backup_count)

    def record(
        self,
        event_type: AuditEventType,
        key: WebhookKey | None,
        /,
        action: str,
        result: str,
        risk_level: RiskLevel = RiskLevel.INFO,
        **details: object,
    ) -> None:
        """Shorthand for logging an event about one webhook."""
        self.log(AuditEvent(
            event_type=event_type,
            webhook_key=str(key) if key is not None else None,
            action=action,
            result=result,
            risk_level=risk_level,
            details=details or None,
        ))

    def _maybe_rotate(self) -> None:
        if not self.log_path.exists():
            return
        if self.log_path.stat().st_size < self._max_bytes:
            return

        def backup(n: int) -> Path:
            return self.log_path.parent / f"{self.log_path.name}.{n}"

        oldest = backup(self._backup_count)
        if oldest.exists():
            oldest.unlink()
        for i in range(self._backup_count - 1, 0, -1):
            if backup(i).exists():
                backup(i).rename(backup(i + 1))
        self.log_path.rename(backup(1))

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        prev_hash: str | None = None
        if self._last_line is not None:
            prev_hash = hashlib.sha256(self._last_line.encode()).hexdigest()

        data = json.loads(event.model_dump_json())
        data["prev_hash"] = prev_hash
        line = json.dumps(data, separators=(",", ":"))

        lock_file = self.log_path.parent / f".{self.log_path.name}.lock"
        with open(lock_file, "w") as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                # Rotate under the lock so two writers cannot both rotate
                self._maybe_rotate()
                with open(self.log_path, "a") as f:
                    f.write(line + "\n")
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)

        self._last_line = line
