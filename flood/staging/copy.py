"""Copy mode: stage local files for the daemon to upload.

Files are copied into ``staging`` first and only renamed into ``inbox``
once complete, so the inbox never exposes a partially written file.
"""

import logging
import shutil
from pathlib import Path, PurePosixPath

from flood.credentials import ProfileRegistry
from flood.schemas.transfer import Identity, Stage
from flood.staging.addressing import parse_destination_uri
from flood.staging.layout import StageLayout

logger = logging.getLogger(__name__)


class CopyError(ValueError):
    """Copy-mode input cannot be staged."""


def plan_copy(source: Path, destination_uri: str, *, recursive: bool) -> list[tuple[Path, Identity]]:
    """Work out which local files map to which identities.

    - File source: the URI key is the object key; a key ending in ``/``
      is a prefix and the file name is appended.
    - Directory source (needs ``recursive``): the directory's contents are
      placed under the key prefix.

    Raises:
        MalformedPathError: The destination URI is not profile/bucket/key.
        CopyError: Missing source, or a directory without ``recursive``.
    """
    profile, bucket, key = parse_destination_uri(destination_uri)
    source = Path(source)

    if source.is_file():
        if key.endswith("/"):
            key = key + source.name
        return [(source, Identity(profile=profile, bucket=bucket, key=key))]

    if source.is_dir():
        if not recursive:
            raise CopyError(f"{source} is a directory; use --recursive to copy it")
        prefix = PurePosixPath(key.strip("/"))
        plan = []
        for item in sorted(source.rglob("*")):
            if item.is_file():
                relative = PurePosixPath(*item.relative_to(source).parts)
                plan.append((item, Identity(profile=profile, bucket=bucket, key=str(prefix / relative))))
        return plan

    raise CopyError(f"Source does not exist: {source}")


def stage_copy(
    source: str | Path,
    destination_uri: str,
    *,
    layout: StageLayout,
    profiles: ProfileRegistry,
    recursive: bool = False,
) -> list[Path]:
    """Copy ``source`` into staging, then promote every file into the inbox.

    Returns:
        The inbox paths of the staged files.

    Raises:
        UnknownProfileError: The URI names a profile not in the registry.
        MalformedPathError / CopyError: See :func:`plan_copy`.
    """
    plan = plan_copy(Path(source), destination_uri, recursive=recursive)
    if not plan:
        logger.info("Nothing to copy from %s", source)
        return []

    profile = plan[0][1].profile
    bucket = plan[0][1].bucket
    profiles.get(profile)
    layout.ensure_bucket(profile, bucket, stages=(Stage.STAGING, Stage.INBOX))

    staged: list[Path] = []
    for local, identity in plan:
        target = layout.path_for(Stage.STAGING, identity)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(local, target)
        logger.debug("Copied %s -> %s", local, target)
        staged.append(target)

    inbox_paths = [layout.promote(path) for path in staged]
    _prune_empty_dirs(layout.root(Stage.STAGING) / profile / bucket)
    logger.info("Staged %d file(s) for s3://%s/%s", len(inbox_paths), profile, bucket)
    return inbox_paths


def _prune_empty_dirs(root: Path) -> None:
    """Remove directories left empty under ``root`` by promotion (keeps ``root``)."""
    for directory in sorted((d for d in root.rglob("*") if d.is_dir()), reverse=True):
        if not any(directory.iterdir()):
            directory.rmdir()
