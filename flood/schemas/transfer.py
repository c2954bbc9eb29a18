"""Schemas for the staged upload pipeline.

Covers stage identity, per-attempt ledger rows, the file record journal,
and the result returned by the upload executor for each claimed file.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Stage(StrEnum):
    """The five stage directories a staged file moves through."""

    STAGING = "staging"
    INBOX = "inbox"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.FAILED})

# Rename is the only movement primitive; anything not listed here is illegal.
LEGAL_TRANSITIONS: frozenset[tuple[Stage, Stage]] = frozenset(
    {
        (Stage.STAGING, Stage.INBOX),
        (Stage.INBOX, Stage.PROCESSING),
        (Stage.PROCESSING, Stage.COMPLETED),
        (Stage.PROCESSING, Stage.FAILED),
    }
)


class AttemptOutcome(StrEnum):
    """Outcome of a single upload attempt."""

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient-failure"
    PERMANENT_FAILURE = "permanent-failure"


class Identity(BaseModel):
    """The ``(profile, bucket, key)`` triple naming a logical object.

    Independent of the stage the file currently sits in. Hashable, so it
    can key the admission registry.
    """

    model_config = ConfigDict(frozen=True)

    profile: str
    bucket: str
    key: str = Field(description="Object key; '/'-separated relative path below the bucket")

    @property
    def uri(self) -> str:
        return f"s3://{self.profile}/{self.bucket}/{self.key}"

    def __str__(self) -> str:
        return f"{self.profile}/{self.bucket}/{self.key}"


class AttemptRecord(BaseModel):
    """One row of the retry ledger. Appended once per attempt, never mutated."""

    id: int | None = None
    identity: Identity
    attempt_number: int = Field(ge=0)
    timestamp: datetime
    outcome: AttemptOutcome
    detail: str = Field(default="", description="Error message or skip reason")


class FileRecord(BaseModel):
    """Journal row tracking one occurrence of a file through the stages."""

    id: int
    identity: Identity
    file_creation_date: datetime
    current_state: Stage
    last_updated: datetime
    upload_outcome: str | None = None


class UploadResult(BaseModel):
    """What the upload executor did with one claimed file."""

    identity: Identity
    outcome: AttemptOutcome
    final_stage: Stage | None = Field(
        default=None,
        description="Stage the file ended in; None if it was left in place after a local I/O error",
    )
    final_path: str = ""
    attempts: int = Field(default=0, ge=0, description="Number of ledgered attempts")
    skipped_upload: bool = Field(
        default=False,
        description="True if the remote object already matched and no bytes were sent",
    )
    error_message: str = ""
