"""Remote bucket existence check, run before any transfer into a bucket."""

import asyncio
import logging

from flood.integrations.s3 import PermanentRemoteError, S3Gateway

logger = logging.getLogger(__name__)


class BucketNotFoundError(PermanentRemoteError):
    """The bucket is not visible to the profile's credentials."""

    def __init__(self, profile: str, bucket: str) -> None:
        super().__init__(
            f"Bucket {bucket!r} does not exist for profile {profile!r}",
            code="NoSuchBucket",
        )
        self.profile = profile
        self.bucket = bucket


class BucketValidator:
    """Confirms a bucket exists by listing the profile's buckets.

    Results are not cached: every call re-queries the endpoint, so buckets
    created or deleted externally are seen immediately.
    """

    async def validate(self, gateway: S3Gateway, bucket: str) -> None:
        """Return normally if ``bucket`` exists.

        Raises:
            BucketNotFoundError: Exact-name membership check failed.
            TransientRemoteError: The listing itself failed transiently.
            PermanentRemoteError: The listing failed permanently (e.g. auth).
        """
        buckets = await asyncio.to_thread(gateway.list_buckets)
        if bucket not in buckets:
            logger.error(
                "Bucket %r not found on endpoint for profile %s (%d bucket(s) visible)",
                bucket,
                gateway.profile_name,
                len(buckets),
            )
            raise BucketNotFoundError(gateway.profile_name, bucket)
        logger.debug("Bucket %r validated for profile %s", bucket, gateway.profile_name)
