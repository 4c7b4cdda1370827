"""JSONL event log for engine activity.

Every sync, completion, merge and session operation is appended as one JSON
line with immediate flush, so the file can be tailed while the engine runs.

Example output:
    {"type": "sync", "timestamp": "...", "epic": "org/repo#7", "sub_issues": 3}
    {"type": "completion", "timestamp": "...", "epic": "org/repo#7", "issue": 11}
    {"type": "merge", "timestamp": "...", "issue": 12, "success": false, "error": "..."}
"""

import json
import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class EventType(str, Enum):
    """Types of event log entries."""
    SYNC = "sync"
    SYNC_FAILED = "sync_failed"
    COMPLETION = "completion"
    NOTIFY_FAILED = "notify_failed"
    PHASE_COMPLETED = "phase_completed"
    PHASE_STATUS = "phase_status"
    MONITORING = "monitoring"
    ASSIGN = "assign"
    SKIP = "skip"
    MERGE = "merge"
    PR_OPENED = "pr_opened"
    PR_DETECTED = "pr_detected"
    SESSION_KILLED = "session_killed"
    SESSION_RESTARTED = "session_restarted"
    RECOVERY = "recovery"
    ERROR = "error"


class EventLog:
    """Append-only JSONL log with size-based rotation."""

    FILENAME = "events.jsonl"

    def __init__(self, state_dir: Path, rotation_kb: int = 1024):
        """Initialize the event log.

        Args:
            state_dir: Engine state directory; the log lives in ``logs/``
            rotation_kb: Rotate when the file exceeds this size (0 disables)
        """
        self.logs_dir = Path(state_dir) / "logs"
        self.log_file = self.logs_dir / self.FILENAME
        self.rotation_bytes = rotation_kb * 1024

    def _rotate_if_needed(self) -> None:
        if not self.rotation_bytes or not self.log_file.exists():
            return
        if self.log_file.stat().st_size < self.rotation_bytes:
            return
        rotated = self.log_file.with_suffix(".jsonl.1")
        os.replace(self.log_file, rotated)

    def write(self, entry_type: EventType, **fields: Any) -> dict:
        """Append one entry.

        Args:
            entry_type: Kind of entry
            **fields: Extra data; values that aren't JSON-native are stringified

        Returns:
            The entry as written
        """
        entry = {"type": entry_type.value, "timestamp": datetime.now().isoformat()}
        entry.update(fields)

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._rotate_if_needed()

        with open(self.log_file, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, default=str) + "\n")
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except OSError:
                pass  # Not supported on every filesystem

        return entry

    def read_recent(self, count: int = 50, entry_type: Optional[EventType] = None) -> list[dict]:
        """Read the newest entries, oldest first."""
        if not self.log_file.exists():
            return []

        entries = []
        for line in self.log_file.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if entry_type is None or entry.get("type") == entry_type.value:
                entries.append(entry)
        return entries[-count:] if count else entries
