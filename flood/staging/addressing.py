"""Mapping between staged filesystem paths and ``(profile, bucket, key)``.

Layout below every stage root::

    <stage_root>/<profile>/<bucket>/<key...>

Pure functions, no filesystem access.
"""

from pathlib import Path, PurePosixPath

from flood.schemas.transfer import Identity

DESTINATION_SCHEME = "s3"


class MalformedPathError(ValueError):
    """A path or URI does not carry profile, bucket and key segments."""


def _check_segments(parts: list[str], source: str) -> None:
    if len(parts) < 3 or not all(parts[:3]):
        raise MalformedPathError(
            f"Expected <profile>/<bucket>/<key...>, got {source!r}"
        )
    if any(part in ("", ".", "..") for part in parts):
        raise MalformedPathError(f"Path segments must be non-empty and not relative: {source!r}")


def identity_from_path(stage_root: Path, path: Path) -> Identity:
    """Derive the identity of a file located under ``stage_root``.

    Raises:
        MalformedPathError: If the path is outside the root or has fewer
            than three segments below it.
    """
    try:
        relative = Path(path).relative_to(stage_root)
    except ValueError:
        raise MalformedPathError(f"{path} is not under {stage_root}") from None

    parts = list(relative.parts)
    _check_segments(parts, str(relative))
    return Identity(profile=parts[0], bucket=parts[1], key="/".join(parts[2:]))


def path_from_identity(stage_root: Path, identity: Identity) -> Path:
    """Inverse of :func:`identity_from_path`."""
    return Path(stage_root, identity.profile, identity.bucket, *PurePosixPath(identity.key).parts)


def parse_destination_uri(uri: str) -> tuple[str, str, str]:
    """Split ``s3://<profile>/<bucket>/<key...>`` into its three parts.

    The key is returned verbatim, so a trailing ``/`` (meaning "under this
    prefix") survives for the copy stager to interpret.

    Raises:
        MalformedPathError: Wrong scheme, or fewer than three segments.
    """
    prefix = f"{DESTINATION_SCHEME}://"
    if not uri.startswith(prefix):
        raise MalformedPathError(f"Destination must start with {prefix}: {uri!r}")

    remainder = uri[len(prefix):]
    parts = remainder.split("/", 2)
    if len(parts) < 3 or not parts[0] or not parts[1] or not parts[2].strip("/"):
        raise MalformedPathError(
            f"Destination must be {prefix}<profile>/<bucket>/<key>: {uri!r}"
        )

    profile, bucket, key = parts
    _check_segments([profile, bucket, *key.strip("/").split("/")], uri)
    return profile, bucket, key
