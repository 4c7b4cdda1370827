"""Tests for the state store, event bus and event log."""

import json

import pytest

from conftest import EPIC_REF, make_snapshot, sub_issue
from epic_orchestrator.event_log import EventLog, EventType
from epic_orchestrator.models import EpicRef, OrchestratorSnapshot
from epic_orchestrator.store import EventBus, StateStore


class TestStateStore:
    """Tests for StateStore."""

    def test_snapshot_survives_reload(self, tmp_path):
        store = StateStore(tmp_path)
        store.save_snapshot(EPIC_REF, make_snapshot([sub_issue(10), sub_issue(11, state="closed")]))

        reloaded = StateStore(tmp_path)
        snapshot = reloaded.load_snapshot(EPIC_REF)

        assert [s.number for s in snapshot.sub_issues] == [10, 11]
        assert snapshot.sub_issues[1].is_closed
        assert reloaded.last_used().ref == EPIC_REF

    def test_local_repo_path(self, tmp_path):
        store = StateStore(tmp_path)
        store.set_local_repo_path(EPIC_REF, "/work/repo")

        assert StateStore(tmp_path).get_local_repo_path(EPIC_REF) == "/work/repo"
        assert store.last_used_repo_path() == "/work/repo"
        assert store.get_local_repo_path(EpicRef(repo="x/y", number=2)) is None

    def test_remove(self, tmp_path):
        store = StateStore(tmp_path)
        store.set_local_repo_path(EPIC_REF, "/work/repo")

        assert store.remove(EPIC_REF)
        assert not store.remove(EPIC_REF)
        assert store.last_used() is None
        assert StateStore(tmp_path).list_epics() == []

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "state" / "epics.json"
        path.parent.mkdir(parents=True)
        path.write_text("{broken")

        assert StateStore(tmp_path).list_epics() == []

    def test_no_temp_file_left(self, tmp_path):
        store = StateStore(tmp_path)
        store.set_local_repo_path(EPIC_REF, "/work/repo")
        assert [p.name for p in store.path.parent.iterdir()] == ["epics.json"]
        assert json.loads(store.path.read_text())["last_used"] == "org/tracker#1"


class TestEventBus:
    """Tests for EventBus."""

    @pytest.mark.asyncio
    async def test_sync_and_async_subscribers(self):
        bus = EventBus()
        received = []

        def plain(event, snapshot):
            received.append(("plain", event))

        async def coro(event, snapshot):
            received.append(("coro", event))

        bus.subscribe(plain)
        bus.subscribe(coro)
        await bus.publish("epic.synced", OrchestratorSnapshot())

        assert received == [("plain", "epic.synced"), ("coro", "epic.synced")]

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self):
        bus = EventBus()
        received = []

        def broken(event, snapshot):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(lambda event, snapshot: received.append(event))
        await bus.publish("pipeline.updated", OrchestratorSnapshot())

        assert received == ["pipeline.updated"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []

        def callback(event, snapshot):
            received.append(event)

        cancel = bus.subscribe(callback)
        other = bus.subscribe(lambda e, s: None)
        cancel()
        await bus.publish("x", OrchestratorSnapshot())

        assert received == []
        assert bus.subscriber_count == 1
        other()
        assert not bus.unsubscribe(callback)


class TestEventLog:
    """Tests for EventLog."""

    def test_write_and_read(self, tmp_path):
        log = EventLog(tmp_path)
        log.write(EventType.SYNC, epic="org/tracker#1", sub_issues=3)
        log.write(EventType.COMPLETION, epic="org/tracker#1", issue=11)

        entries = log.read_recent()
        assert [e["type"] for e in entries] == ["sync", "completion"]
        assert log.read_recent(entry_type=EventType.COMPLETION)[0]["issue"] == 11
        assert len(log.read_recent(count=1)) == 1

    def test_rotation(self, tmp_path):
        log = EventLog(tmp_path, rotation_kb=1)
        for n in range(40):
            log.write(EventType.MERGE, issue=n, error="x" * 40)

        assert log.log_file.with_suffix(".jsonl.1").exists()
        assert log.log_file.stat().st_size < 1024 + 200

    def test_missing_file(self, tmp_path):
        assert EventLog(tmp_path).read_recent() == []
