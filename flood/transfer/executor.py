"""Upload executor: the per-file retry state machine.

For one claimed file in ``processing``::

    Pending -> Uploading -> Success | Transient | Permanent
                   ^            |
                   +-- backoff -+   (until the attempt ceiling)

The bucket is confirmed first, in its own backoff loop that does not
consume upload attempts. Each upload attempt then checks whether the
remote object already matches and uploads otherwise. Every attempt appends
exactly one ledger row. Terminal outcomes move the file to ``completed``
or ``failed``.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from flood.integrations.s3 import PermanentRemoteError, S3Gateway, TransientRemoteError
from flood.schemas.transfer import AttemptOutcome, Identity, Stage, UploadResult
from flood.staging.layout import StageLayout
from flood.transfer.idempotency import IdempotencyChecker, RemoteMatch, compute_file_md5
from flood.transfer.ledger import RetryLedger
from flood.transfer.validator import BucketValidator

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """Bounded exponential backoff with uniform jitter.

    Attempt ``n`` (0-indexed) that fails transiently is followed by a wait of
    ``base_delay * 2**n + uniform(0, jitter)`` seconds. There is no cap on
    the delay other than the attempt ceiling.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=10, ge=1)
    base_delay: float = Field(default=30.0, ge=0.0)
    jitter: float = Field(default=1.0, ge=0.0)

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        rng = rng or random
        return self.base_delay * (2**attempt) + rng.uniform(0.0, self.jitter)


class UploadExecutor:
    """Drives one claimed file to a terminal stage.

    Usage::

        executor = UploadExecutor(layout=layout, ledger=ledger, gateways=gateways)
        result = await executor.process(layout.claim(inbox_path))
        print(result.final_stage, result.attempts)

    ``sleep`` and ``rng`` are injectable so tests can run the full retry
    ladder without waiting. Ledger writes run in worker threads so a commit
    never blocks other files on the event loop.
    """

    def __init__(
        self,
        *,
        layout: StageLayout,
        ledger: RetryLedger,
        gateways: Mapping[str, S3Gateway],
        validator: BucketValidator | None = None,
        checker: IdempotencyChecker | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._layout = layout
        self._ledger = ledger
        self._gateways = gateways
        self._validator = validator or BucketValidator()
        self._checker = checker or IdempotencyChecker()
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def _record(
        self, identity: Identity, attempt: int, outcome: AttemptOutcome, detail: str = ""
    ) -> None:
        await asyncio.to_thread(self._ledger.record_attempt, identity, attempt, outcome, detail)

    async def process(self, path: Path) -> UploadResult:
        """Upload a file sitting in ``processing`` and finalize it.

        Attempt numbering always starts at 0: a file recovered after a crash
        is a fresh occurrence, not a continuation.

        Returns:
            The UploadResult describing the terminal outcome.
        """
        identity = self._layout.identity_of(path)

        try:
            created_at = datetime.fromtimestamp(path.stat().st_mtime, UTC)
            record_id = await asyncio.to_thread(
                self._ledger.open_file_record, identity, created_at=created_at
            )
        except OSError as exc:
            return await self._local_io_failure(path, identity, None, 0, exc)

        gateway = self._gateways.get(identity.profile)
        if gateway is None:
            message = f"No gateway configured for profile {identity.profile!r}"
            logger.error("%s: %s", identity, message)
            await self._record(identity, 0, AttemptOutcome.PERMANENT_FAILURE, message)
            return await self._finish(
                path, identity, record_id,
                target=Stage.FAILED,
                outcome=AttemptOutcome.PERMANENT_FAILURE,
                attempts=1,
                error_message=message,
            )

        try:
            await self._confirm_bucket(gateway, identity)
        except TransientRemoteError as exc:
            logger.error("Giving up on %s: bucket check kept failing: %s", identity, exc)
            await self._record(identity, 0, AttemptOutcome.TRANSIENT_FAILURE, str(exc))
            return await self._finish(
                path, identity, record_id,
                target=Stage.FAILED,
                outcome=AttemptOutcome.TRANSIENT_FAILURE,
                attempts=1,
                error_message=str(exc),
            )
        except PermanentRemoteError as exc:
            logger.error("Permanent failure for %s: %s", identity, exc)
            await self._record(identity, 0, AttemptOutcome.PERMANENT_FAILURE, str(exc))
            return await self._finish(
                path, identity, record_id,
                target=Stage.FAILED,
                outcome=AttemptOutcome.PERMANENT_FAILURE,
                attempts=1,
                error_message=str(exc),
            )

        local_md5: str | None = None
        local_size: int | None = None
        last_error = ""

        for attempt in range(self.policy.max_attempts):
            skipped = False
            try:
                if local_md5 is None:
                    local_size = path.stat().st_size
                    local_md5 = await asyncio.to_thread(compute_file_md5, path)

                match = await self._checker.check(gateway, identity, local_md5, local_size)
                if match == RemoteMatch.MATCH:
                    skipped = True
                else:
                    logger.info(
                        "Uploading %s (%d bytes, attempt %d/%d)",
                        identity, local_size, attempt + 1, self.policy.max_attempts,
                    )
                    await asyncio.to_thread(
                        gateway.put_file, identity.bucket, identity.key, path, local_md5
                    )

            except TransientRemoteError as exc:
                last_error = str(exc)
                await self._record(identity, attempt, AttemptOutcome.TRANSIENT_FAILURE, last_error)
                if attempt + 1 >= self.policy.max_attempts:
                    break
                delay = self.policy.delay(attempt, self._rng)
                logger.warning(
                    "Transient failure for %s (attempt %d/%d): %s; retrying in %.1fs",
                    identity, attempt + 1, self.policy.max_attempts, exc, delay,
                )
                await self._sleep(delay)
                continue

            except PermanentRemoteError as exc:
                logger.error("Permanent failure for %s (attempt %d): %s", identity, attempt + 1, exc)
                await self._record(identity, attempt, AttemptOutcome.PERMANENT_FAILURE, str(exc))
                return await self._finish(
                    path, identity, record_id,
                    target=Stage.FAILED,
                    outcome=AttemptOutcome.PERMANENT_FAILURE,
                    attempts=attempt + 1,
                    error_message=str(exc),
                )

            except OSError as exc:
                return await self._local_io_failure(path, identity, record_id, attempt, exc)

            detail = "remote object already matches; upload skipped" if skipped else ""
            await self._record(identity, attempt, AttemptOutcome.SUCCESS, detail)
            logger.info(
                "%s %s on attempt %d", identity, "skipped (already uploaded)" if skipped else "uploaded",
                attempt + 1,
            )
            return await self._finish(
                path, identity, record_id,
                target=Stage.COMPLETED,
                outcome=AttemptOutcome.SUCCESS,
                attempts=attempt + 1,
                skipped_upload=skipped,
            )

        logger.error(
            "Giving up on %s after %d attempts: %s", identity, self.policy.max_attempts, last_error
        )
        return await self._finish(
            path, identity, record_id,
            target=Stage.FAILED,
            outcome=AttemptOutcome.TRANSIENT_FAILURE,
            attempts=self.policy.max_attempts,
            error_message=last_error,
        )

    async def _confirm_bucket(self, gateway: S3Gateway, identity: Identity) -> None:
        """Validate the target bucket, backing off on listing failures.

        Listing retries follow the same policy as uploads but are not
        upload attempts: they write no ledger rows and leave the attempt
        counter at 0.

        Raises:
            BucketNotFoundError / PermanentRemoteError: Listing answered, no retry.
            TransientRemoteError: Listing still failing after ``max_attempts`` tries.
        """
        for attempt in range(self.policy.max_attempts):
            try:
                await self._validator.validate(gateway, identity.bucket)
                return
            except TransientRemoteError as exc:
                if attempt + 1 >= self.policy.max_attempts:
                    raise
                delay = self.policy.delay(attempt, self._rng)
                logger.warning(
                    "Bucket check for %s failed (%d/%d): %s; retrying in %.1fs",
                    identity, attempt + 1, self.policy.max_attempts, exc, delay,
                )
                await self._sleep(delay)

    # ------------------------------------------------------------------
    # Terminal handling
    # ------------------------------------------------------------------

    async def _finish(
        self,
        path: Path,
        identity: Identity,
        record_id: int,
        *,
        target: Stage,
        outcome: AttemptOutcome,
        attempts: int,
        skipped_upload: bool = False,
        error_message: str = "",
    ) -> UploadResult:
        upload_outcome = "success" if target == Stage.COMPLETED else "failure"
        try:
            final_path = self._layout.finalize(path, target)
        except OSError:
            logger.exception("Could not move %s to %s; leaving it in place", path, target)
            return UploadResult(
                identity=identity,
                outcome=outcome,
                final_stage=None,
                final_path=str(path),
                attempts=attempts,
                skipped_upload=skipped_upload,
                error_message=error_message,
            )

        await asyncio.to_thread(
            self._ledger.update_file_record, record_id, target, upload_outcome=upload_outcome
        )
        return UploadResult(
            identity=identity,
            outcome=outcome,
            final_stage=target,
            final_path=str(final_path),
            attempts=attempts,
            skipped_upload=skipped_upload,
            error_message=error_message,
        )

    async def _local_io_failure(
        self,
        path: Path,
        identity: Identity,
        record_id: int | None,
        attempt: int,
        exc: OSError,
    ) -> UploadResult:
        """Local read/stat failures stop this file but leave it where it is."""
        message = f"local I/O error: {exc}"
        logger.error(
            "%s: %s; file left at %s for manual intervention", identity, message, path, exc_info=exc
        )
        await self._record(identity, attempt, AttemptOutcome.PERMANENT_FAILURE, message)
        if record_id is not None:
            await asyncio.to_thread(
                self._ledger.update_file_record, record_id, Stage.PROCESSING, upload_outcome="failure"
            )
        return UploadResult(
            identity=identity,
            outcome=AttemptOutcome.PERMANENT_FAILURE,
            final_stage=None,
            final_path=str(path),
            attempts=attempt + 1,
            error_message=message,
        )
