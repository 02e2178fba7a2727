"""
Unit tests for SnapshotCoordinator.

Tests cover:
- Save with and without a running server (quiesce handshake)
- Handshake timeout and the best-effort resume
- Restore, list, clean, delete and prune
- Backup period validation and the periodic timer
- Mutual exclusion between concurrent operations
"""

import json
import threading
import time
from dataclasses import replace
from datetime import timedelta
from itertools import groupby

import pytest

from tests.fakes import NOW, FakeServer, FakeStore, make_ref, output_of
from worldkeep.coordinator import SnapshotCoordinator
from worldkeep.errors import (
    HandshakeTimeout,
    InternalError,
    ProtectedResourceError,
    StateError,
    ValidationError,
)
from worldkeep.snapshot.reference import SnapshotKind

HOUR = timedelta(hours=1)
COMMIT = ("commit", "--allow-empty", "-m")


def commits(store):
    return [c for c in store.commands if c[:3] == COMMIT]


@pytest.fixture
def make_coordinator(settings, console):
    created = []

    def factory(store, server, **overrides):
        coord = SnapshotCoordinator(
            replace(settings, **overrides), store, server, console, clock=lambda: NOW
        )
        created.append(coord)
        return coord

    yield factory
    for coord in created:
        coord.close()


class TestSave:

    def test_clean_tree_is_a_noop(self, coordinator, store, server, console):
        """Saving a clean workspace creates nothing."""
        assert coordinator.save(SnapshotKind.MANUAL, "nothing changed") is None

        assert commits(store) == []
        assert server.subscribe_count == 0
        assert "skipping backup. no dirty files" in output_of(console)

    def test_save_without_server(self, coordinator, store, server, console):
        store.clean = False

        name = coordinator.save(SnapshotKind.MANUAL, "Built a gold farm")

        assert name == "saves/manual/20210102-010000"
        assert store.commands[-3:] == [
            ("checkout", "--orphan", "saves/manual/20210102-010000"),
            ("add", "-A"),
            ("commit", "--allow-empty", "-m", "Built a gold farm"),
        ]
        assert server.sent == []
        assert "backup success" in output_of(console)

    def test_save_with_running_server(self, coordinator, store, server, console):
        server.running = True
        store.clean = False

        name = coordinator.save(SnapshotKind.PERIODIC, "Automatic periodic backup")

        assert name == "saves/periodic/20210102-010000"
        assert server.sent[0] == "save hold"
        assert server.sent[-1] == "save resume"
        assert len(commits(store)) == 1
        assert server.subscription is None  # unsubscribed

    def test_handshake_polls_with_query(self, make_coordinator):
        store = FakeStore(clean=False)
        server = FakeServer(running=True, ready_on="query", queries_before_ready=3)
        coordinator = make_coordinator(store, server)

        coordinator.save(SnapshotKind.MANUAL, "polled")

        assert server.sent == ["save hold", "save query", "save query", "save query", "save resume"]
        assert len(commits(store)) == 1

    def test_running_server_clean_tree_still_resumes(self, coordinator, store, server, console):
        server.running = True

        assert coordinator.save(SnapshotKind.MANUAL, "msg") is None

        assert server.sent == ["save hold", "save resume"]
        assert "skipping backup" in output_of(console)

    def test_handshake_timeout(self, make_coordinator, console):
        """No ready marker before the deadline: TimeoutError and no new backup."""
        store = FakeStore(clean=False)
        server = FakeServer(running=True, ready_on=None)
        coordinator = make_coordinator(store, server, save_timeout=timedelta(milliseconds=200))

        with pytest.raises(HandshakeTimeout):
            coordinator.save(SnapshotKind.MANUAL, "never saved")

        assert isinstance(HandshakeTimeout("x"), TimeoutError)
        assert commits(store) == []
        assert store.refs == []
        assert server.sent[0] == "save hold"
        assert "save query" in server.sent
        assert server.sent[-1] == "save resume"
        assert server.subscription is None
        assert "world writes may still be paused" in output_of(console)

    def test_resume_failure_does_not_mask_result(self, coordinator, store, server, console):
        server.running = True
        store.clean = False
        original_send = server.send_input

        def send(line):
            if line == "save resume":
                raise StateError("pipe closed")
            original_send(line)

        server.send_input = send

        assert coordinator.save(SnapshotKind.MANUAL, "ok") == "saves/manual/20210102-010000"
        assert "unable to resume server saves" in output_of(console)

    def test_server_exit_during_handshake(self, make_coordinator):
        store = FakeStore(clean=False)
        server = FakeServer(running=True, ready_on=None)
        coordinator = make_coordinator(store, server)
        original_send = server.send_input

        def send(line):
            original_send(line)
            if line == "save hold":
                server.running = False
                server.subscription.close()

        server.send_input = send

        with pytest.raises(StateError):
            coordinator.save(SnapshotKind.MANUAL, "msg")
        assert commits(store) == []

    def test_second_subscriber_is_rejected(self, coordinator, server):
        server.running = True
        server.start_read_output()

        with pytest.raises(StateError):
            coordinator.save(SnapshotKind.MANUAL, "msg")

    def test_empty_message_is_internal_error(self, coordinator, store):
        store.clean = False

        with pytest.raises(InternalError):
            coordinator.create_snapshot(SnapshotKind.MANUAL, "")
        assert commits(store) == []

    def test_unknown_kind(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.save("weekly", "msg")

    def test_round_trip(self, coordinator, store, console):
        """Save then list: the new backup carries the message and is active."""
        store.clean = False
        coordinator.save(SnapshotKind.MANUAL, "msg")

        refs = coordinator.list()

        assert len(refs) == 1
        assert refs[0].subject == "msg"
        assert refs[0].is_active
        assert "* saves/manual/20210102-010000" in output_of(console)

    def test_audit_log(self, make_coordinator, tmp_path, monkeypatch):
        logs = tmp_path / "logs.jsonl"
        monkeypatch.setattr("worldkeep.log.LOGS_FILE", logs)
        store = FakeStore(clean=False)
        coordinator = make_coordinator(store, FakeServer(running=False), audit_log=True)

        coordinator.save(SnapshotKind.MANUAL, "audited")

        entry = json.loads(logs.read_text().splitlines()[-1])
        assert entry["event"] == "save"
        assert entry["backup"] == "saves/manual/20210102-010000"
        assert entry["message"] == "audited"
        assert "timestamp" in entry


class TestRestore:

    def test_requires_stopped_server(self, coordinator, server):
        server.running = True

        with pytest.raises(StateError, match="stop the server"):
            coordinator.restore("saves/manual/20210101-000000")

    def test_requires_clean_tree(self, coordinator, store):
        store.clean = False

        with pytest.raises(StateError, match="dirty files"):
            coordinator.restore("saves/manual/20210101-000000")

    def test_unknown_backup(self, coordinator):
        with pytest.raises(ValidationError, match="not found"):
            coordinator.restore("saves/manual/19990101-000000")

    def test_missing_name(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.restore("")

    def test_checks_out_backup(self, coordinator, store, console):
        store.refs = [make_ref("saves/manual/20210101-000000", HOUR)]

        coordinator.restore("saves/manual/20210101-000000")

        assert store.commands[-1] == ("checkout", "saves/manual/20210101-000000")
        assert "successfully restored to saves/manual/20210101-000000" in output_of(console)


class TestList:

    def test_backend_order_and_markers(self, coordinator, store, console):
        store.refs = [
            make_ref("saves/periodic/20210101-000000", HOUR),
            make_ref("saves/manual/20200101-000000", 2 * HOUR, active=True),
        ]

        refs = coordinator.list()

        assert [r.name for r in refs] == [
            "saves/periodic/20210101-000000",
            "saves/manual/20200101-000000",
        ]
        out = output_of(console)
        assert "  saves/periodic/20210101-000000 testhash test (relative date)" in out
        assert "* saves/manual/20200101-000000" in out
        assert out.index("saves/periodic") < out.index("saves/manual")

    def test_filters_pass_through(self, coordinator, store):
        coordinator.list(["saves/manual/*", "saves/periodic/2021*"])

        assert store.commands[-1] == ("list", "saves/manual/*", "saves/periodic/2021*")

    def test_empty(self, coordinator, console):
        assert coordinator.list() == []
        assert "no backups found" in output_of(console)


class TestClean:

    def test_server_running(self, coordinator, server):
        server.running = True

        with pytest.raises(StateError, match="cannot clean. server is running"):
            coordinator.clean()

    def test_refuses_workspace_without_commits(self, coordinator, store):
        """A fresh repository has no backup to return to after the temp save."""
        store.clean = False

        with pytest.raises(StateError, match="main has no commits yet"):
            coordinator.clean()
        assert commits(store) == []
        assert not any(c[0] == "checkout" for c in store.commands)

    def test_saves_temp_then_checks_out_previous_head(self, coordinator, store, console):
        store.refs = [make_ref("saves/manual/20210101-000000", HOUR, active=True)]
        store.clean = False

        coordinator.clean()

        assert ("checkout", "--orphan", "saves/temp/20210102-010000") in store.commands
        assert commits(store) == [COMMIT + ("Saving for cleaning",)]
        assert store.commands[-1] == ("checkout", "saves/manual/20210101-000000")
        assert "clean successful" in output_of(console)

    def test_clean_tree_only_checks_out(self, coordinator, store):
        store.refs = [make_ref("saves/manual/20210101-000000", HOUR, active=True)]

        coordinator.clean()

        assert commits(store) == []
        assert store.commands[-1] == ("checkout", "saves/manual/20210101-000000")


class TestDelete:

    def test_requires_filters(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.delete([])

    def test_no_match(self, coordinator):
        with pytest.raises(ValidationError, match="no backups match"):
            coordinator.delete(["saves/manual/1999*"])

    def test_active_alone_is_protected(self, coordinator, store):
        store.refs = [make_ref("saves/manual/20210101-000000", HOUR, active=True)]

        with pytest.raises(ProtectedResourceError):
            coordinator.delete(["saves/manual/20210101-000000"])
        assert len(store.refs) == 1

    def test_active_in_batch_is_skipped(self, coordinator, store):
        store.refs = [
            make_ref("saves/manual/20210101-000000", HOUR, active=True),
            make_ref("saves/manual/20210101-010000", HOUR),
        ]

        deleted = coordinator.delete(["saves/manual/*"])

        assert [r.name for r in deleted] == ["saves/manual/20210101-010000"]
        assert [r.name for r in store.refs] == ["saves/manual/20210101-000000"]


def periodic(age, active=False):
    return make_ref(f"saves/periodic/{(NOW - age).strftime('%Y%m%d-%H%M%S')}", age, active)


class TestPrune:

    def test_prune_scenario(self, coordinator, store):
        refs = [periodic(24 * HOUR), periodic(25 * HOUR), periodic(48 * HOUR)]
        refs += [periodic(i * HOUR, active=i == 5) for i in range(1, 10)]
        store.refs = refs

        candidates = coordinator.prune(12 * HOUR, 12 * HOUR)

        assert len(candidates) == 2
        assert {r.name for r in store.deleted} == {
            periodic(48 * HOUR).name,
            periodic(24 * HOUR).name,
        }
        assert ("list", "saves/periodic/*") in store.commands

    def test_only_periodic_backups(self, coordinator, store):
        store.refs = [
            make_ref("saves/manual/20200101-000000", 1000 * HOUR),
            make_ref("saves/temp/20200101-000000", 1000 * HOUR),
        ]

        assert coordinator.prune(HOUR, HOUR) == []
        assert store.deleted == []

    def test_nothing_to_prune(self, coordinator, store, console):
        store.refs = [periodic(HOUR)]

        assert coordinator.prune(12 * HOUR, HOUR) == []
        assert "nothing to prune" in output_of(console)
        assert not any(c[0] == "delete" for c in store.commands)

    def test_audit_counts_deleted_not_candidates(self, make_coordinator, tmp_path, monkeypatch):
        logs = tmp_path / "logs.jsonl"
        monkeypatch.setattr("worldkeep.log.LOGS_FILE", logs)
        store = FakeStore(refs=[periodic(48 * HOUR), periodic(47 * HOUR)])
        store.delete_references = lambda refs: []  # dry run
        coordinator = make_coordinator(store, FakeServer(running=False), audit_log=True)

        candidates = coordinator.prune(12 * HOUR, 12 * HOUR)

        entry = json.loads(logs.read_text().splitlines()[-1])
        assert len(candidates) == 2
        assert entry["event"] == "prune"
        assert entry["count"] == 0

    def test_negative_durations(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.prune(-HOUR, HOUR)


class TestPeriod:

    def test_initial_interval_logged(self, make_coordinator, console):
        coordinator = make_coordinator(FakeStore(), FakeServer(), backup_interval=30 * timedelta(minutes=1))

        assert coordinator.interval == timedelta(minutes=30)
        assert "backup interval set to 30m0s" in output_of(console)

    def test_disable(self, coordinator):
        coordinator.set_period(HOUR)
        coordinator.set_period(timedelta(0))

        assert coordinator.interval == timedelta(0)
        assert not coordinator._timer.armed

    @pytest.mark.parametrize("interval", [timedelta(milliseconds=500), timedelta(seconds=-1)])
    def test_rejects_invalid(self, coordinator, interval):
        with pytest.raises(ValidationError):
            coordinator.set_period(interval)

    def test_invalid_initial_interval(self, settings, console):
        with pytest.raises(ValidationError):
            SnapshotCoordinator(
                replace(settings, backup_interval=timedelta(milliseconds=10)),
                FakeStore(), FakeServer(), console,
            )

    def test_periodic_save_fires(self, coordinator, store):
        store.clean = False

        coordinator.set_period(timedelta(seconds=1))

        deadline = time.monotonic() + 5
        while not commits(store) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert commits(store) == [COMMIT + ("Automatic periodic backup",)]
        assert store.refs[-1].name.startswith("saves/periodic/")

    def test_periodic_failure_is_logged(self, coordinator, store, console):
        store.clean = False

        def boom(*args):
            raise StateError("disk full")

        store.run_command = boom
        coordinator.set_period(timedelta(seconds=1))

        # The timer keeps firing after a failure
        deadline = time.monotonic() + 6
        while output_of(console).count("periodic backup failed") < 2 and time.monotonic() < deadline:
            time.sleep(0.05)
        assert output_of(console).count("periodic backup failed. disk full") >= 2

    def test_host_error_keeps_timer_running(self, coordinator, store, console):
        """An OSError (e.g. unwritable audit log) is reported and the timer survives."""
        store.clean = False

        def unwritable(*args):
            raise OSError("audit log not writable")

        store.run_command = unwritable
        coordinator.set_period(timedelta(seconds=1))

        deadline = time.monotonic() + 6
        while output_of(console).count("periodic backup failed") < 2 and time.monotonic() < deadline:
            time.sleep(0.05)
        assert output_of(console).count("periodic backup failed. audit log not writable") >= 2
        assert coordinator._timer._thread.is_alive()

    def test_disable_while_fire_waits_for_lock(self, coordinator, store, console):
        """A fire blocked behind another operation is dropped once the period is disabled."""
        store.clean = False
        coordinator.set_period(timedelta(seconds=1))

        with coordinator._lock:
            deadline = time.monotonic() + 5
            while not coordinator._timer.fire_is_current() and time.monotonic() < deadline:
                time.sleep(0.01)
            assert coordinator._timer.fire_is_current()
            # What set_period(0) does once it holds the lock
            coordinator._timer.reset(timedelta(0))

        deadline = time.monotonic() + 2
        while "periodic backup skipped" not in output_of(console) and time.monotonic() < deadline:
            time.sleep(0.01)
        assert "periodic backup skipped. backup period changed" in output_of(console)
        assert commits(store) == []
        assert coordinator.interval == timedelta(0)
        assert not coordinator._timer.armed

    def test_set_period_after_fire_waits_for_lock(self, coordinator, store):
        """set_period() blocked behind a fire still wins over the fire it raced."""
        store.clean = False
        coordinator.set_period(timedelta(seconds=1))

        coordinator._lock.acquire()
        try:
            deadline = time.monotonic() + 5
            while not coordinator._timer.fire_is_current() and time.monotonic() < deadline:
                time.sleep(0.01)
            setter = threading.Thread(target=coordinator.set_period, args=(timedelta(0),))
            setter.start()
            time.sleep(0.05)
        finally:
            coordinator._lock.release()
        setter.join(timeout=5)
        time.sleep(0.2)

        # Either order is legal; a save that ran first must not be re-armed
        assert len(commits(store)) <= 1
        assert coordinator.interval == timedelta(0)
        assert not coordinator._timer.armed


class TestMutualExclusion:

    def test_prune_and_save_do_not_interleave(self, make_coordinator):
        """Backend calls from concurrent operations form contiguous blocks."""
        refs = [periodic(24 * HOUR), periodic(25 * HOUR), periodic(48 * HOUR)]
        store = FakeStore(refs=refs, clean=False)
        server = FakeServer(running=True, ready_on="query", queries_before_ready=5)
        coordinator = make_coordinator(store, server)

        errors = []

        def run(fn, *args):
            try:
                fn(*args)
            except Exception as e:  # surfaced via the assertion below
                errors.append(e)

        threads = [
            threading.Thread(target=run, args=(coordinator.save, SnapshotKind.MANUAL, "m"), name="saver"),
            threading.Thread(target=run, args=(coordinator.prune, 12 * HOUR, 12 * HOUR), name="pruner"),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        owners = [name for name, _ in store.calls]
        blocks = [name for name, _ in groupby(owners)]
        assert sorted(blocks) == ["pruner", "saver"]
        assert len(commits(store)) == 1
        assert len(store.deleted) == 2
