"""Directory stage machine for the server root.

Owns the five stage roots and moves files between them. A file's stage
*is* its location, and ``os.replace`` is the only movement primitive, so a
given identity never has two owners mid-transition.
"""

import logging
import os
import shutil
from collections.abc import Iterable, Iterator
from pathlib import Path

from flood.schemas.transfer import LEGAL_TRANSITIONS, TERMINAL_STAGES, Identity, Stage
from flood.staging.addressing import (
    MalformedPathError,
    identity_from_path,
    path_from_identity,
)

logger = logging.getLogger(__name__)


class IllegalTransitionError(RuntimeError):
    """A stage move outside the legal transition table was requested."""


class StageLayout:
    """The ``<server_root>/<stage>/<profile>/<bucket>/<key...>`` tree.

    Usage::

        layout = StageLayout("/srv/flood")
        layout.purge_staging()
        layout.ensure_layout(["r2-prod", "b2-archive"])

        claimed = layout.claim(inbox_path)      # None if already claimed
        if claimed is not None:
            layout.finalize(claimed, Stage.COMPLETED)
    """

    def __init__(self, server_root: str | Path) -> None:
        self.server_root = Path(server_root)

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    def root(self, stage: Stage) -> Path:
        return self.server_root / stage.value

    def path_for(self, stage: Stage, identity: Identity) -> Path:
        return path_from_identity(self.root(stage), identity)

    def stage_of(self, path: Path) -> Stage:
        """Return the stage whose root contains ``path``."""
        for stage in Stage:
            if Path(path).is_relative_to(self.root(stage)):
                return stage
        raise MalformedPathError(f"{path} is not under any stage root of {self.server_root}")

    def identity_of(self, path: Path) -> Identity:
        return identity_from_path(self.root(self.stage_of(path)), path)

    def iter_files(self, stage: Stage) -> Iterator[Path]:
        """Yield every regular file below a stage root, in sorted order."""
        root = self.root(stage)
        if not root.is_dir():
            return
        for item in sorted(root.rglob("*")):
            if item.is_file():
                yield item

    def count_files(self, stage: Stage) -> int:
        return sum(1 for _ in self.iter_files(stage))

    # ------------------------------------------------------------------
    # Tree management
    # ------------------------------------------------------------------

    def ensure_layout(self, profiles: Iterable[str]) -> None:
        """Create every stage root and a per-profile subtree under each.

        Idempotent. Bucket directories are created lazily as buckets are seen.
        """
        names = list(profiles)
        for stage in Stage:
            for name in names:
                (self.root(stage) / name).mkdir(parents=True, exist_ok=True)
        logger.info("Stage layout ready under %s for %d profile(s)", self.server_root, len(names))

    def ensure_bucket(self, profile: str, bucket: str, stages: Iterable[Stage] = tuple(Stage)) -> None:
        for stage in stages:
            (self.root(stage) / profile / bucket).mkdir(parents=True, exist_ok=True)

    def purge_staging(self) -> None:
        """Delete and recreate the staging root.

        Partially copied files from a crashed copy are discarded; the copy's
        original source is untouched and can be re-run.
        """
        root = self.root(Stage.STAGING)
        if root.exists():
            shutil.rmtree(root)
            logger.info("Purged staging root %s", root)
        root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _move(self, path: Path, source: Stage, target: Stage) -> Path:
        if (source, target) not in LEGAL_TRANSITIONS:
            raise IllegalTransitionError(f"{source} -> {target} is not a legal transition")

        actual = self.stage_of(path)
        if actual != source:
            raise IllegalTransitionError(
                f"{path} is in {actual}, expected {source} for {source} -> {target}"
            )

        identity = identity_from_path(self.root(source), path)
        destination = self.path_for(target, identity)
        destination.parent.mkdir(parents=True, exist_ok=True)
        os.replace(path, destination)
        logger.info("%s: %s -> %s", identity, source, target)
        return destination

    def promote(self, staging_path: Path) -> Path:
        """Move a fully copied file from staging into the inbox."""
        return self._move(staging_path, Stage.STAGING, Stage.INBOX)

    def claim(self, inbox_path: Path) -> Path | None:
        """Claim an inbox file by renaming it into processing.

        Returns:
            The new path, or None if the file is gone (someone already
            claimed it). Duplicate notifications for one arrival are
            therefore harmless.
        """
        try:
            return self._move(inbox_path, Stage.INBOX, Stage.PROCESSING)
        except FileNotFoundError:
            logger.debug("Nothing to claim at %s (already claimed)", inbox_path)
            return None

    def finalize(self, processing_path: Path, target: Stage) -> Path:
        """Move a processed file into ``completed`` or ``failed``.

        A copy left in the other terminal stage by an earlier occurrence of
        the same identity is removed, so the identity keeps one file on disk.
        """
        if target not in TERMINAL_STAGES:
            raise IllegalTransitionError(f"finalize target must be terminal, got {target}")
        final = self._move(processing_path, Stage.PROCESSING, target)
        identity = identity_from_path(self.root(target), final)

        for other in TERMINAL_STAGES - {target}:
            stale = self.path_for(other, identity)
            if not stale.is_file():
                continue
            try:
                stale.unlink()
            except OSError:
                logger.exception("%s: could not remove earlier copy %s", identity, stale)
            else:
                logger.info("%s: removed earlier copy from %s", identity, other)
        return final
