"""Tests for the upload executor retry state machine."""

import random
import threading

import pytest

from flood.integrations.s3 import (
    HeadNotSupportedError,
    PermanentRemoteError,
    RemoteObject,
    TransientRemoteError,
)
from flood.schemas.transfer import AttemptOutcome, Identity, Stage

from conftest import FakeGateway, place

IDENTITY = Identity(profile="p1", bucket="b1", key="dir/x.bin")


def _claimed(layout, relative="p1/b1/dir/x.bin", content=b"payload"):
    return place(layout, Stage.PROCESSING, relative, content)


class TestRetryPolicy:
    def test_doubling_with_jitter(self, make_executor):
        policy = make_executor({}).policy
        rng = random.Random(7)
        for attempt, base in [(0, 30.0), (1, 60.0), (2, 120.0), (9, 15360.0)]:
            delay = policy.delay(attempt, rng)
            assert base <= delay <= base + 1.0

    def test_defaults(self, make_executor):
        policy = make_executor({}).policy
        assert policy.max_attempts == 10
        assert policy.base_delay == 30.0
        assert policy.jitter == 1.0


class TestSuccess:
    @pytest.mark.asyncio
    async def test_first_attempt(self, layout, ledger, gateway, make_executor, sleeps):
        path = _claimed(layout)
        result = await make_executor({"p1": gateway}).process(path)

        assert result.outcome == AttemptOutcome.SUCCESS
        assert result.final_stage == Stage.COMPLETED
        assert result.attempts == 1
        assert not result.skipped_upload
        assert (layout.root(Stage.COMPLETED) / "p1/b1/dir/x.bin").exists()
        assert not path.exists()
        assert gateway.put_calls == [("b1", "dir/x.bin")]
        assert sleeps == []

        rows = ledger.attempts_for(IDENTITY)
        assert [(r.attempt_number, r.outcome) for r in rows] == [(0, AttemptOutcome.SUCCESS)]

    @pytest.mark.asyncio
    async def test_file_record_tracks_outcome(self, layout, ledger, gateway, make_executor):
        await make_executor({"p1": gateway}).process(_claimed(layout))
        records = ledger.file_records_for(IDENTITY)
        assert len(records) == 1
        assert records[0].current_state == Stage.COMPLETED
        assert records[0].upload_outcome == "success"


class TestTransientRetries:
    @pytest.mark.asyncio
    async def test_recovers_after_three_failures(self, layout, ledger, gateway, make_executor, sleeps):
        gateway.put_failures = [TransientRemoteError("connection reset") for _ in range(3)]
        result = await make_executor({"p1": gateway}).process(_claimed(layout))

        assert result.final_stage == Stage.COMPLETED
        assert result.attempts == 4
        rows = ledger.attempts_for(IDENTITY)
        assert [r.attempt_number for r in rows] == [0, 1, 2, 3]
        assert [r.outcome for r in rows] == [AttemptOutcome.TRANSIENT_FAILURE] * 3 + [
            AttemptOutcome.SUCCESS
        ]
        assert len(sleeps) == 3
        assert 30.0 <= sleeps[0] <= 31.0
        assert 60.0 <= sleeps[1] <= 61.0
        assert 120.0 <= sleeps[2] <= 121.0

    @pytest.mark.asyncio
    async def test_exhaustion_moves_to_failed(self, layout, ledger, gateway, make_executor, sleeps):
        gateway.put_failures = [TransientRemoteError("read timeout") for _ in range(10)]
        result = await make_executor({"p1": gateway}).process(_claimed(layout))

        assert result.final_stage == Stage.FAILED
        assert result.outcome == AttemptOutcome.TRANSIENT_FAILURE
        assert result.attempts == 10
        assert "read timeout" in result.error_message
        assert (layout.root(Stage.FAILED) / "p1/b1/dir/x.bin").exists()

        rows = ledger.attempts_for(IDENTITY)
        assert [r.attempt_number for r in rows] == list(range(10))
        assert all(r.outcome == AttemptOutcome.TRANSIENT_FAILURE for r in rows)
        # No wait after the last attempt
        assert len(sleeps) == 9
        assert ledger.file_records_for(IDENTITY)[0].upload_outcome == "failure"

    @pytest.mark.asyncio
    async def test_bucket_listing_retried(self, layout, ledger, gateway, make_executor, sleeps):
        gateway.list_failures = [TransientRemoteError("dns failure"), TransientRemoteError("dns failure")]
        result = await make_executor({"p1": gateway}).process(_claimed(layout))

        assert result.final_stage == Stage.COMPLETED
        assert result.attempts == 1
        assert gateway.list_calls == 3
        # Listing retries back off but are not upload attempts
        rows = ledger.attempts_for(IDENTITY)
        assert [(r.attempt_number, r.outcome) for r in rows] == [(0, AttemptOutcome.SUCCESS)]
        assert len(sleeps) == 2
        assert 30.0 <= sleeps[0] <= 31.0
        assert 60.0 <= sleeps[1] <= 61.0

    @pytest.mark.asyncio
    async def test_bucket_listing_exhausted(self, layout, ledger, gateway, make_executor, sleeps):
        gateway.list_failures = [TransientRemoteError("dns failure") for _ in range(10)]
        result = await make_executor({"p1": gateway}).process(_claimed(layout))

        assert result.final_stage == Stage.FAILED
        assert result.outcome == AttemptOutcome.TRANSIENT_FAILURE
        assert gateway.list_calls == 10
        assert gateway.put_calls == []
        assert len(sleeps) == 9
        rows = ledger.attempts_for(IDENTITY)
        assert [(r.attempt_number, r.outcome) for r in rows] == [
            (0, AttemptOutcome.TRANSIENT_FAILURE)
        ]

    @pytest.mark.asyncio
    async def test_bucket_validated_once_confirmed(self, layout, gateway, make_executor):
        gateway.put_failures = [TransientRemoteError("reset"), TransientRemoteError("reset")]
        await make_executor({"p1": gateway}).process(_claimed(layout))
        assert gateway.list_calls == 1

    @pytest.mark.asyncio
    async def test_lost_response_detected_by_idempotency(self, layout, ledger, gateway, make_executor):
        # First PUT lands remotely but the client sees a timeout
        gateway.put_failures = [TransientRemoteError("read timeout")]
        gateway.lose_response_on_failure = True
        result = await make_executor({"p1": gateway}).process(_claimed(layout))

        assert result.final_stage == Stage.COMPLETED
        assert result.skipped_upload
        assert len(gateway.put_calls) == 1
        last = ledger.attempts_for(IDENTITY)[-1]
        assert last.attempt_number == 1
        assert last.outcome == AttemptOutcome.SUCCESS
        assert "skipped" in last.detail


class TestPermanentFailures:
    @pytest.mark.asyncio
    async def test_missing_bucket(self, layout, ledger, make_executor, sleeps):
        layout.ensure_layout(["r2-prod"])
        path = place(layout, Stage.PROCESSING, "r2-prod/missing-bucket/file.txt")
        gateway = FakeGateway("r2-prod", {"media"})

        result = await make_executor({"r2-prod": gateway}).process(path)

        assert result.final_stage == Stage.FAILED
        assert result.outcome == AttemptOutcome.PERMANENT_FAILURE
        assert gateway.put_calls == []
        assert sleeps == []
        assert (layout.root(Stage.FAILED) / "r2-prod/missing-bucket/file.txt").exists()

        rows = ledger.attempts_for(Identity(profile="r2-prod", bucket="missing-bucket", key="file.txt"))
        assert len(rows) == 1
        assert rows[0].attempt_number == 0
        assert rows[0].outcome == AttemptOutcome.PERMANENT_FAILURE
        assert "missing-bucket" in rows[0].detail

    @pytest.mark.asyncio
    async def test_missing_bucket_after_listing_failure(self, layout, ledger, make_executor, sleeps):
        layout.ensure_layout(["r2-prod"])
        path = place(layout, Stage.PROCESSING, "r2-prod/missing-bucket/file.txt")
        gateway = FakeGateway("r2-prod", {"media"})
        gateway.list_failures = [TransientRemoteError("connection reset")]

        result = await make_executor({"r2-prod": gateway}).process(path)

        assert result.final_stage == Stage.FAILED
        assert result.outcome == AttemptOutcome.PERMANENT_FAILURE
        assert gateway.list_calls == 2
        assert gateway.put_calls == []
        assert len(sleeps) == 1
        assert (layout.root(Stage.FAILED) / "r2-prod/missing-bucket/file.txt").exists()

        rows = ledger.attempts_for(Identity(profile="r2-prod", bucket="missing-bucket", key="file.txt"))
        assert [(r.attempt_number, r.outcome) for r in rows] == [
            (0, AttemptOutcome.PERMANENT_FAILURE)
        ]

    @pytest.mark.asyncio
    async def test_access_denied(self, layout, ledger, gateway, make_executor, sleeps):
        gateway.put_failures = [PermanentRemoteError("AccessDenied", code="AccessDenied")]
        result = await make_executor({"p1": gateway}).process(_claimed(layout))

        assert result.final_stage == Stage.FAILED
        assert result.attempts == 1
        assert sleeps == []
        rows = ledger.attempts_for(IDENTITY)
        assert [(r.attempt_number, r.outcome) for r in rows] == [
            (0, AttemptOutcome.PERMANENT_FAILURE)
        ]

    @pytest.mark.asyncio
    async def test_permanent_after_transient(self, layout, ledger, gateway, make_executor):
        gateway.put_failures = [
            TransientRemoteError("slow down"),
            PermanentRemoteError("InvalidAccessKeyId"),
        ]
        result = await make_executor({"p1": gateway}).process(_claimed(layout))
        assert result.final_stage == Stage.FAILED
        assert [r.outcome for r in ledger.attempts_for(IDENTITY)] == [
            AttemptOutcome.TRANSIENT_FAILURE,
            AttemptOutcome.PERMANENT_FAILURE,
        ]

    @pytest.mark.asyncio
    async def test_unknown_profile(self, layout, ledger, make_executor):
        path = _claimed(layout)
        result = await make_executor({}).process(path)
        assert result.final_stage == Stage.FAILED
        rows = ledger.attempts_for(IDENTITY)
        assert len(rows) == 1
        assert rows[0].outcome == AttemptOutcome.PERMANENT_FAILURE


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_run_skips_upload(self, layout, ledger, gateway, make_executor):
        executor = make_executor({"p1": gateway})
        await executor.process(_claimed(layout))

        # Same bytes delivered again under the same identity
        result = await executor.process(_claimed(layout))

        assert result.final_stage == Stage.COMPLETED
        assert result.skipped_upload
        assert len(gateway.put_calls) == 1
        rows = ledger.attempts_for(IDENTITY)
        assert [r.attempt_number for r in rows] == [0, 0]

    @pytest.mark.asyncio
    async def test_reentry_after_completion_fails_with_one_copy(self, layout, ledger, gateway, make_executor):
        executor = make_executor({"p1": gateway})
        first = await executor.process(_claimed(layout))
        assert first.final_stage == Stage.COMPLETED

        gateway.put_failures = [PermanentRemoteError("AccessDenied", code="AccessDenied")]
        second = await executor.process(_claimed(layout, content=b"changed"))

        assert second.final_stage == Stage.FAILED
        copies = [
            stage for stage in Stage if (layout.root(stage) / "p1/b1/dir/x.bin").exists()
        ]
        assert copies == [Stage.FAILED]
        assert (layout.root(Stage.FAILED) / "p1/b1/dir/x.bin").read_bytes() == b"changed"

    @pytest.mark.asyncio
    async def test_different_content_overwrites(self, layout, gateway, make_executor):
        gateway.objects[("b1", "dir/x.bin")] = RemoteObject(size=3, etag="0" * 32, digest="0" * 32)
        result = await make_executor({"p1": gateway}).process(_claimed(layout, content=b"new bytes"))
        assert not result.skipped_upload
        assert gateway.put_calls == [("b1", "dir/x.bin")]
        assert gateway.objects[("b1", "dir/x.bin")].size == len(b"new bytes")

    @pytest.mark.asyncio
    async def test_head_unsupported_still_uploads(self, layout, gateway, make_executor):
        gateway.head_error = HeadNotSupportedError("405 Method Not Allowed")
        result = await make_executor({"p1": gateway}).process(_claimed(layout))
        assert result.final_stage == Stage.COMPLETED
        assert not result.skipped_upload
        assert len(gateway.put_calls) == 1


class TestLocalErrors:
    @pytest.mark.asyncio
    async def test_read_error_leaves_file_in_processing(self, layout, ledger, gateway, make_executor):
        gateway.put_failures = [PermissionError(13, "Permission denied")]
        path = _claimed(layout)
        result = await make_executor({"p1": gateway}).process(path)

        assert result.final_stage is None
        assert result.outcome == AttemptOutcome.PERMANENT_FAILURE
        assert path.exists()
        assert not (layout.root(Stage.FAILED) / "p1/b1/dir/x.bin").exists()
        rows = ledger.attempts_for(IDENTITY)
        assert len(rows) == 1
        assert "local I/O error" in rows[0].detail

    @pytest.mark.asyncio
    async def test_vanished_file(self, layout, ledger, gateway, make_executor):
        path = layout.root(Stage.PROCESSING) / "p1/b1/dir/x.bin"
        result = await make_executor({"p1": gateway}).process(path)
        assert result.final_stage is None
        assert gateway.put_calls == []
        assert ledger.attempts_for(IDENTITY)[0].outcome == AttemptOutcome.PERMANENT_FAILURE


@pytest.mark.asyncio
async def test_ledger_writes_run_off_the_event_loop(layout, ledger, gateway, make_executor, monkeypatch):
    gateway.put_failures = [TransientRemoteError("reset")]
    threads = []
    record_attempt = ledger.record_attempt

    def spy(*args, **kwargs):
        threads.append(threading.get_ident())
        return record_attempt(*args, **kwargs)

    monkeypatch.setattr(ledger, "record_attempt", spy)
    await make_executor({"p1": gateway}).process(_claimed(layout))

    assert len(threads) == 2
    assert threading.get_ident() not in threads


@pytest.mark.parametrize("failures", [1, 5, 9])
@pytest.mark.asyncio
async def test_attempt_rows_match_attempt_count(layout, ledger, gateway, make_executor, failures):
    gateway.put_failures = [TransientRemoteError("reset") for _ in range(failures)]
    result = await make_executor({"p1": gateway}).process(_claimed(layout))
    assert result.attempts == failures + 1
    assert len(ledger.attempts_for(IDENTITY)) == failures + 1
