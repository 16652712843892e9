"""Unit tests for the destination orchestrator"""

import asyncio

import pytest

from distributor.destinations.base import UploadMetadata
from distributor.errors import ConfigurationError, DisabledError, NotFoundError, UploadError
from distributor.models.destination_upload import DestinationUpload
from distributor.services.destination_manager import compute_retry_eligible
from distributor.services.event_bus import UPLOAD_COMPLETE, UPLOAD_START


@pytest.fixture
def metadata():
    return UploadMetadata(
        received_id="recv-1",
        original_filename="IMG_0001.JPG",
        destination_filename="IMG_0001.JPG",
        mime_type="image/jpeg",
        extension=".jpg",
    )


class TestRegistry:
    """Test registration and lookups"""

    def test_last_registration_wins(self, manager, fake_destination):
        first = fake_destination("remote")
        second = fake_destination("remote")
        manager.register(first)
        manager.register(second)

        assert manager.get("remote") is second
        assert len(manager.get_all_destinations()) == 1

    def test_enabled_filter(self, manager, fake_destination):
        manager.register(fake_destination("a"))
        manager.register(fake_destination("b", enabled=False))

        assert [d.get_name() for d in manager.get_enabled_destinations()] == ["a"]
        assert len(manager.get_all_destinations()) == 2

    @pytest.mark.asyncio
    async def test_replace_all_retires_old_instances_after_drain(self, manager, fake_destination, sample_file, metadata):
        old = fake_destination("remote")
        old.release = asyncio.Event()
        manager.register(old)

        upload = asyncio.create_task(manager.upload_to("remote", sample_file, metadata))
        await asyncio.sleep(0)
        assert manager.get_active_uploads()["remote"]

        new = fake_destination("remote")
        manager.replace_all([new, fake_destination("local")])
        await asyncio.sleep(0)

        assert manager.get("remote") is new
        assert old.cleanups == 0  # still uploading

        old.release.set()
        outcome = await upload
        await manager.wait_retired()

        assert outcome["success"] is True
        assert old.cleanups == 1
        assert new.cleanups == 0

    @pytest.mark.asyncio
    async def test_describe(self, manager, fake_destination):
        manager.register(fake_destination("a"))
        manager.register(fake_destination("b", enabled=False))

        described = {d["name"]: d for d in await manager.describe()}

        assert described["a"]["ready"] is True
        assert described["a"]["type"] == "FakeDestination"
        assert described["b"]["enabled"] is False
        assert described["b"]["ready"] is False
        assert await manager.has_ready_destinations() is True


class TestInitialize:
    """Test concurrent initialization"""

    @pytest.mark.asyncio
    async def test_failed_initialize_disables_only_that_destination(self, manager, fake_destination):
        good = fake_destination("good")
        bad = fake_destination("bad", init_error=ConfigurationError("missing credentials"))
        skipped = fake_destination("off", enabled=False)
        for destination in (good, bad, skipped):
            manager.register(destination)

        outcomes = await manager.initialize_all()

        assert outcomes == {"good": True, "bad": False}
        assert good.initialized is True
        assert bad.enabled is False
        assert skipped.initialized is False
        assert [d.get_name() for d in manager.get_enabled_destinations()] == ["good"]


class TestUploadToAll:
    """Test fan-out, isolation and persistence"""

    @pytest.mark.asyncio
    async def test_one_record_per_destination_regardless_of_failures(
        self, manager, database, fake_destination, sample_file, metadata
    ):
        manager.register(fake_destination("a"))
        manager.register(fake_destination("b", fail_with=UploadError("timeout")))
        manager.register(fake_destination("c", fail_with=RuntimeError("unexpected")))

        outcomes = await manager.upload_to_all(sample_file, metadata)

        assert {o["destination"]: o["success"] for o in outcomes} == {"a": True, "b": False, "c": False}
        assert outcomes[0]["result"] == {"path": "a/IMG_0001.JPG"}
        assert outcomes[1]["error"] == "timeout"

        records = database.uploads_for("recv-1")
        assert len(records) == 3
        by_destination = {r.destination: r for r in records}
        assert by_destination["a"].result == {"path": "a/IMG_0001.JPG"}
        assert by_destination["b"].error == "timeout"
        assert by_destination["b"].result is None
        assert all(r.duration_ms is not None for r in records)
        assert all(r.filename == "IMG_0001.JPG" for r in records)

    @pytest.mark.asyncio
    async def test_slow_destination_does_not_block_others(self, manager, fake_destination, sample_file, metadata):
        slow = fake_destination("slow")
        slow.release = asyncio.Event()
        fast = fake_destination("fast")
        manager.register(slow)
        manager.register(fast)

        task = asyncio.create_task(manager.upload_to_all(sample_file, metadata))
        await asyncio.wait_for(slow.started.wait(), timeout=1)
        await asyncio.wait_for(fast.started.wait(), timeout=1)
        while "fast" in manager.get_active_uploads():
            await asyncio.sleep(0)

        assert len(fast.uploads) == 1
        assert list(manager.get_active_uploads()) == ["slow"]

        slow.release.set()
        outcomes = await task
        assert all(o["success"] for o in outcomes)

    @pytest.mark.asyncio
    async def test_no_enabled_destinations_returns_empty(self, manager, fake_destination, sample_file, metadata):
        manager.register(fake_destination("off", enabled=False))
        assert await manager.upload_to_all(sample_file, metadata) == []

    @pytest.mark.asyncio
    async def test_active_uploads_tracked_and_released(self, manager, fake_destination, sample_file, metadata):
        destination = fake_destination("a", fail_with=UploadError("nope"))
        destination.release = asyncio.Event()
        manager.register(destination)

        task = asyncio.create_task(manager.upload_to_all(sample_file, metadata))
        await asyncio.wait_for(destination.started.wait(), timeout=1)

        active = manager.get_active_uploads()
        assert active["a"][0]["filename"] == "IMG_0001.JPG"
        assert active["a"][0]["receivedId"] == "recv-1"
        assert "startTime" in active["a"][0]

        destination.release.set()
        await task
        assert manager.get_active_uploads() == {}

    @pytest.mark.asyncio
    async def test_events_published(self, manager, event_bus, fake_destination, sample_file, metadata):
        events = []
        event_bus.subscribe(events.append)
        manager.register(fake_destination("a"))

        await manager.upload_to_all(sample_file, metadata)

        assert [e.type for e in events] == [UPLOAD_START, UPLOAD_COMPLETE]
        assert events[1].payload["success"] is True
        assert events[1].payload["destination"] == "a"


class TestUploadTo:
    """Test single-destination uploads"""

    @pytest.mark.asyncio
    async def test_unknown_destination(self, manager, sample_file, metadata):
        with pytest.raises(NotFoundError):
            await manager.upload_to("nowhere", sample_file, metadata)

    @pytest.mark.asyncio
    async def test_disabled_destination(self, manager, fake_destination, sample_file, metadata):
        manager.register(fake_destination("off", enabled=False))
        with pytest.raises(DisabledError):
            await manager.upload_to("off", sample_file, metadata)

    @pytest.mark.asyncio
    async def test_records_attempt(self, manager, database, fake_destination, sample_file, metadata):
        manager.register(fake_destination("a"))

        outcome = await manager.upload_to("a", sample_file, metadata)

        assert outcome["success"] is True
        assert len(database.uploads_for("recv-1")) == 1


class TestRetryEligibility:
    """Test the supersession rule"""

    def _history(self, *pairs):
        return [DestinationUpload(received_id="r", destination=d, success=s) for d, s in pairs]

    def test_failure_without_success_is_eligible(self):
        history = self._history(("local", True), ("remote", False))
        assert compute_retry_eligible(history) == ["remote"]

    def test_later_success_supersedes_failure(self):
        history = self._history(("remote", False), ("remote", True))
        assert compute_retry_eligible(history) == []

    def test_any_success_makes_destination_ineligible(self):
        history = self._history(("remote", True), ("remote", False))
        assert compute_retry_eligible(history) == []

    def test_repeated_failures_listed_once(self):
        history = self._history(("b", False), ("a", False), ("b", False))
        assert compute_retry_eligible(history) == ["b", "a"]

    @pytest.mark.asyncio
    async def test_retry_twice_is_idempotent(self, manager, database, fake_destination, sample_file, metadata):
        remote = fake_destination("remote", fail_with=UploadError("timeout"))
        manager.register(remote)
        await manager.upload_to_all(sample_file, metadata)
        assert manager.retry_eligible_failures("recv-1") == ["remote"]

        remote.fail_with = None
        for name in manager.retry_eligible_failures("recv-1"):
            await manager.upload_to(name, sample_file, metadata)

        assert manager.retry_eligible_failures("recv-1") == []
        assert len(database.uploads_for("recv-1")) == 2


class TestCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_all_tolerates_failures(self, manager, fake_destination):
        good = fake_destination("good")
        bad = fake_destination("bad")

        async def broken_cleanup():
            raise RuntimeError("socket already closed")

        bad.cleanup = broken_cleanup
        manager.register(bad)
        manager.register(good)

        await manager.cleanup_all()
        assert good.cleanups == 1
