"""Skip uploads whose bytes are already on the remote endpoint.

Compares the local MD5 digest against the remote object's ``flood-md5``
metadata, falling back to a single-part ETag (which is the MD5 of the
content). Multipart ETags (``<md5>-<parts>``) carry no usable digest.
"""

import asyncio
import hashlib
import logging
from enum import StrEnum
from pathlib import Path

from flood.integrations.s3 import HeadNotSupportedError, RemoteObject, S3Gateway
from flood.schemas.transfer import Identity

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


class RemoteMatch(StrEnum):
    """Result of comparing a local file against its remote counterpart."""

    ABSENT = "absent"
    MATCH = "match"
    DIFFERENT = "different"
    UNSUPPORTED = "unsupported"


def compute_file_md5(file_path: str | Path) -> str:
    """Compute the MD5 hex digest of a file's contents."""
    md5 = hashlib.md5()
    with open(file_path, "rb") as f:
        while chunk := f.read(HASH_CHUNK_SIZE):
            md5.update(chunk)
    return md5.hexdigest()


def remote_matches(remote: RemoteObject, local_md5: str, local_size: int | None = None) -> bool:
    if local_size is not None and remote.size != local_size:
        return False
    if remote.digest:
        return remote.digest.lower() == local_md5.lower()
    if remote.etag and "-" not in remote.etag:
        return remote.etag.lower() == local_md5.lower()
    return False


class IdempotencyChecker:
    """Queries remote object metadata ahead of each upload attempt.

    An endpoint that cannot answer HEAD is not an error: the check is
    skipped and the upload proceeds. That is logged once per profile.
    """

    def __init__(self) -> None:
        self._unsupported_logged: set[str] = set()

    async def check(
        self,
        gateway: S3Gateway,
        identity: Identity,
        local_md5: str,
        local_size: int | None = None,
    ) -> RemoteMatch:
        """Compare the remote object for ``identity`` against a local digest.

        Raises:
            TransientRemoteError / PermanentRemoteError: The metadata query
                failed for a reason other than a capability gap.
        """
        try:
            remote = await asyncio.to_thread(gateway.head_object, identity.bucket, identity.key)
        except HeadNotSupportedError as exc:
            if gateway.profile_name not in self._unsupported_logged:
                self._unsupported_logged.add(gateway.profile_name)
                logger.info(
                    "Endpoint for profile %s does not support HEAD (%s); "
                    "skipping idempotency checks",
                    gateway.profile_name,
                    exc,
                )
            return RemoteMatch.UNSUPPORTED

        if remote is None:
            return RemoteMatch.ABSENT
        if remote_matches(remote, local_md5, local_size):
            logger.info("%s already present remotely with matching digest", identity)
            return RemoteMatch.MATCH
        logger.debug("%s present remotely with a different digest; overwriting", identity)
        return RemoteMatch.DIFFERENT
