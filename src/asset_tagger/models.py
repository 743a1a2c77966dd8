"""Data model shared by the pipeline stages."""

import posixpath
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator


class AssetRef(BaseModel):
    """An asset in the content repository. Immutable for one run."""

    model_config = ConfigDict(frozen=True)

    path: str
    base_url: str

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def folder(self) -> str:
        return posixpath.dirname(self.path)

    @property
    def api_path(self) -> str:
        """Asset path as seen by the Assets HTTP API (``/content/dam`` removed)."""
        if self.path.startswith("/content/dam"):
            return self.path[len("/content/dam") :]
        return self.path


class FetchedPayload(BaseModel):
    """Rendition bytes plus the candidate that produced them."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(repr=False)
    byte_length: int
    content_type: str | None = None
    candidate: str
    candidate_index: int


class PromptSpec(BaseModel):
    """Prompt text and the XML namespace map that goes with it."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    namespaces: dict[str, str]


class CommitOutcome(StrEnum):
    PENDING = "pending"
    TRANSIENT_FAILURE = "transient_failure"
    TERMINAL_SUCCESS = "terminal_success"
    TERMINAL_FAILURE = "terminal_failure"


class CommitAttempt(BaseModel):
    """One metadata write attempt and what came of it."""

    writer: str
    attempt: int
    outcome: CommitOutcome = CommitOutcome.PENDING
    detail: str = ""


class PipelineStage(StrEnum):
    START = "start"
    PROMPT_BUILT = "prompt_built"
    RENDITION_FETCHED = "rendition_fetched"
    STAGED = "staged"
    INFERRED = "inferred"
    NORMALIZED = "normalized"
    COMMIT_ATTEMPTED = "commit_attempted"
    SKIPPED_NO_PROPERTIES = "skipped_no_properties"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


class StageRecord(BaseModel):
    """A single entry of the run timeline."""

    model_config = ConfigDict(frozen=True)

    stage: str
    status: Literal["ok", "retry", "failed", "skipped", "info"]
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    elapsed_ms: int = 0


class TaggingRequest(BaseModel):
    """Everything one invocation needs, as handed over by the trigger adapter."""

    asset_path: str | None = None
    prompt_config: dict[str, Any] | None = None
    base_url: str | None = None
    access_token: str | None = Field(default=None, repr=False)
    candidates: tuple[str, ...] | None = None


class PipelineResult(BaseModel):
    """Caller-facing outcome of one run."""

    status: Literal["success", "error"]
    asset_path: str | None
    updated_properties: list[str] = Field(default_factory=list)
    properties_count: int = 0
    processing_time_ms: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    rendition: str | None = None
    commit_attempts: list[CommitAttempt] = Field(default_factory=list)
    timeline: list[StageRecord] = Field(default_factory=list)
    error: str | None = None
    error_type: str | None = None

    _exception: Exception | None = PrivateAttr(default=None)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def raise_for_status(self) -> "PipelineResult":
        """Re-raise the stage error of a failed run; return self otherwise."""
        if self._exception is not None:
            raise self._exception
        return self
