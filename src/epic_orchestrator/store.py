"""Durable epic state and the change-notification surface.

StateStore keeps the last-known snapshot of every linked epic and the local
repository path used for it, so monitoring can resume after a restart.
EventBus is how the presentation layer hears about changes.
"""

import asyncio
import inspect
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field
from rich.console import Console

from .models import EpicRef, EpicSnapshot, OrchestratorSnapshot


console = Console()


class PersistedEpic(BaseModel):
    """One durable record, keyed by epic identity."""
    ref: EpicRef
    snapshot: Optional[EpicSnapshot] = None
    local_repo_path: Optional[str] = None
    saved_at: datetime = Field(default_factory=datetime.now)


class StateStore:
    """JSON-file key-value store of epic records.

    Stores records in ``<state_dir>/state/epics.json``. Writes go to a
    temporary file first and replace the real one, so a crash mid-write
    leaves the previous version intact.
    """

    FILENAME = "epics.json"

    def __init__(self, state_dir: Path):
        """Initialize the store.

        Args:
            state_dir: Engine state directory (e.g. ``<project>/.epicorch``)
        """
        self.state_dir = Path(state_dir)
        self._file = self.state_dir / "state" / self.FILENAME
        self._records: dict[str, PersistedEpic] = {}
        self._last_used_key: Optional[str] = None
        self._load()

    @property
    def path(self) -> Path:
        return self._file

    def _load(self) -> None:
        """Load records from disk."""
        if not self._file.exists():
            self._records = {}
            return

        try:
            data = json.loads(self._file.read_text(encoding="utf-8"))
            self._records = {
                key: PersistedEpic.model_validate(value)
                for key, value in data.get("epics", {}).items()
            }
            self._last_used_key = data.get("last_used")
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            console.print(f"[yellow][StateStore] Warning: could not load {self._file}: {e}[/yellow]")
            self._records = {}
            self._last_used_key = None

    def _save(self) -> None:
        """Persist all records atomically."""
        self._file.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "last_used": self._last_used_key,
            "epics": {key: r.model_dump(mode="json") for key, r in self._records.items()},
        }
        tmp = self._file.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, self._file)

    def _record(self, ref: EpicRef) -> PersistedEpic:
        record = self._records.get(ref.key)
        if record is None:
            record = PersistedEpic(ref=ref)
            self._records[ref.key] = record
        return record

    def save_snapshot(self, ref: EpicRef, snapshot: EpicSnapshot) -> None:
        """Replace the stored snapshot of an epic."""
        record = self._record(ref)
        record.snapshot = snapshot
        record.saved_at = datetime.now()
        if snapshot.epic.local_repo_path and not record.local_repo_path:
            record.local_repo_path = snapshot.epic.local_repo_path
        self._last_used_key = ref.key
        self._save()

    def load_snapshot(self, ref: EpicRef) -> Optional[EpicSnapshot]:
        record = self._records.get(ref.key)
        return record.snapshot if record else None

    def set_local_repo_path(self, ref: EpicRef, path: str) -> None:
        record = self._record(ref)
        record.local_repo_path = path
        self._last_used_key = ref.key
        self._save()

    def get_local_repo_path(self, ref: EpicRef) -> Optional[str]:
        record = self._records.get(ref.key)
        return record.local_repo_path if record else None

    def last_used(self) -> Optional[PersistedEpic]:
        """The most recently touched epic record, if any."""
        if self._last_used_key is None:
            return None
        return self._records.get(self._last_used_key)

    def last_used_repo_path(self) -> Optional[str]:
        record = self.last_used()
        return record.local_repo_path if record else None

    def remove(self, ref: EpicRef) -> bool:
        """Forget an epic. Returns True if it was stored."""
        if ref.key not in self._records:
            return False
        del self._records[ref.key]
        if self._last_used_key == ref.key:
            self._last_used_key = None
        self._save()
        return True

    def list_epics(self) -> list[PersistedEpic]:
        return sorted(self._records.values(), key=lambda r: r.saved_at, reverse=True)


Subscriber = Callable[[str, OrchestratorSnapshot], Union[None, Awaitable[None]]]


class EventBus:
    """Publish-subscribe channel for engine changes.

    Subscribers receive the event name and an immutable snapshot. They may
    be plain functions or coroutines; a failing subscriber is reported and
    skipped without affecting the others.
    """

    def __init__(self):
        self._subscribers: dict[int, Subscriber] = {}
        self._next_id = 0

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        token = self._next_id
        self._next_id += 1
        self._subscribers[token] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    def unsubscribe(self, callback: Subscriber) -> bool:
        for token, registered in list(self._subscribers.items()):
            if registered is callback:
                del self._subscribers[token]
                return True
        return False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: str, snapshot: OrchestratorSnapshot) -> None:
        """Deliver an event to every subscriber, in registration order."""
        for callback in list(self._subscribers.values()):
            try:
                result: Any = callback(event, snapshot)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                console.print(f"[red]Subscriber failed on '{event}': {e}[/red]")
