"""boto3 gateway to one S3-compatible endpoint per profile.

All remote failures are classified here, once, into transient or permanent
errors. Callers never look at botocore exceptions directly.
"""

import base64
import logging
import socket
from pathlib import Path
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    SSLError,
)
from pydantic import BaseModel

from flood.schemas.profiles import Profile

logger = logging.getLogger(__name__)

DIGEST_METADATA_KEY = "flood-md5"

TRANSIENT_ERROR_CODES = frozenset(
    {
        "RequestTimeout",
        "RequestTimeoutException",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "ServiceUnavailable",
        "InternalError",
    }
)
NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
UNSUPPORTED_STATUS = frozenset({405, 501})


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RemoteError(Exception):
    """Base class for failures reported by the remote endpoint layer."""

    def __init__(self, message: str, *, code: str = "") -> None:
        super().__init__(message)
        self.code = code


class TransientRemoteError(RemoteError):
    """Network-level failure that may succeed on retry."""


class PermanentRemoteError(RemoteError):
    """Failure that will not be resolved by retrying."""


class HeadNotSupportedError(RemoteError):
    """The endpoint does not implement object metadata queries."""


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _http_status(exc: ClientError) -> int:
    return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)


def classify_error(exc: BaseException) -> RemoteError:
    """Map a transport or client exception to a transient/permanent error.

    Unknown kinds are permanent, so an unclassified error never retries
    indefinitely.
    """
    if isinstance(exc, RemoteError):
        return exc

    if isinstance(exc, ClientError):
        code = _error_code(exc)
        status = _http_status(exc)
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in TRANSIENT_ERROR_CODES or status >= 500:
            return TransientRemoteError(f"{code or status}: {message}", code=code)
        return PermanentRemoteError(f"{code or status}: {message}", code=code)

    if isinstance(exc, SSLError):
        return PermanentRemoteError(f"TLS failure: {exc}", code=type(exc).__name__)

    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        # Endpoint/DNS resolution failures, connect and read timeouts, resets
        return TransientRemoteError(str(exc), code=type(exc).__name__)

    if isinstance(exc, (TimeoutError, ConnectionError, socket.gaierror)):
        return TransientRemoteError(str(exc) or type(exc).__name__, code=type(exc).__name__)

    if isinstance(exc, BotoCoreError):
        # NoCredentialsError, ParamValidationError, ...
        return PermanentRemoteError(str(exc), code=type(exc).__name__)

    return PermanentRemoteError(f"{type(exc).__name__}: {exc}", code=type(exc).__name__)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class RemoteObject(BaseModel):
    """Metadata of an existing remote object."""

    size: int
    etag: str = ""
    digest: str = ""


def md5_to_content_md5(md5_hex: str) -> str:
    """Convert a hex MD5 digest into the base64 form of ``Content-MD5``."""
    return base64.b64encode(bytes.fromhex(md5_hex)).decode("ascii")


def build_s3_client(profile: Profile) -> Any:
    """Create a boto3 S3 client for a profile.

    botocore's own retries are disabled so that every attempt is seen, and
    ledgered, by the retry engine.
    """
    session = boto3.Session(
        aws_access_key_id=profile.access_key_id,
        aws_secret_access_key=profile.secret_access_key.get_secret_value(),
        region_name=profile.region,
    )
    config = Config(
        signature_version="s3v4",
        retries={"total_max_attempts": 1, "mode": "standard"},
    )
    kwargs: dict[str, Any] = {"config": config}
    if profile.endpoint:
        kwargs["endpoint_url"] = profile.endpoint
    return session.client("s3", **kwargs)


class S3Gateway:
    """Blocking S3 operations for one profile, with classified errors.

    Usage::

        gateway = S3Gateway.for_profile(profile)
        if "media" in gateway.list_buckets():
            gateway.put_file("media", "photos/a.jpg", path, md5_hex)

    The boto3 client is thread-safe; callers run these methods via
    ``asyncio.to_thread``.
    """

    def __init__(self, profile_name: str, client: Any) -> None:
        self.profile_name = profile_name
        self._client = client

    @classmethod
    def for_profile(cls, profile: Profile) -> "S3Gateway":
        return cls(profile.name, build_s3_client(profile))

    def list_buckets(self) -> set[str]:
        """Names of every bucket visible to this profile's credentials."""
        try:
            response = self._client.list_buckets()
        except Exception as exc:
            raise classify_error(exc) from exc
        return {b["Name"] for b in response.get("Buckets", [])}

    def head_object(self, bucket: str, key: str) -> RemoteObject | None:
        """Fetch object metadata.

        Returns:
            The object's metadata, or None if no such object exists.

        Raises:
            HeadNotSupportedError: The endpoint cannot answer HEAD requests.
            TransientRemoteError / PermanentRemoteError: Anything else.
        """
        try:
            response = self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_CODES or _http_status(exc) == 404:
                return None
            if _http_status(exc) in UNSUPPORTED_STATUS or _error_code(exc) == "NotImplemented":
                raise HeadNotSupportedError(str(exc), code=_error_code(exc)) from exc
            raise classify_error(exc) from exc
        except Exception as exc:
            raise classify_error(exc) from exc

        return RemoteObject(
            size=int(response.get("ContentLength", 0)),
            etag=str(response.get("ETag", "")).strip('"'),
            digest=response.get("Metadata", {}).get(DIGEST_METADATA_KEY, ""),
        )

    def put_file(self, bucket: str, key: str, path: Path, md5_hex: str) -> None:
        """Upload a local file as a single PUT, tagged with its MD5 digest.

        Opening the local file happens before the remote call, so local I/O
        errors surface as ``OSError`` rather than a remote classification.
        """
        with open(path, "rb") as body:
            try:
                self._client.put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=body,
                    ContentMD5=md5_to_content_md5(md5_hex),
                    Metadata={DIGEST_METADATA_KEY: md5_hex},
                )
            except Exception as exc:
                raise classify_error(exc) from exc
        logger.debug("PUT s3://%s/%s via profile %s", bucket, key, self.profile_name)
