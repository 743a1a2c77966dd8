"""Error kinds raised by the tagging pipeline stages."""

from collections.abc import Sequence


class TaggingError(Exception):
    """Base class for every error a pipeline stage surfaces to its caller."""

    kind = "TaggingError"


class InvalidInput(TaggingError):
    """Required identifiers or configuration are missing or unusable."""

    kind = "InvalidInput"


class NoRenditionAvailable(TaggingError):
    """Every rendition candidate was not found or exhausted its retries."""

    kind = "NoRenditionAvailable"

    def __init__(self, asset_path: str, tried: Sequence[str]) -> None:
        self.asset_path = asset_path
        self.tried = list(tried)
        super().__init__(
            f"No suitable rendition found for {asset_path} after trying "
            f"{len(self.tried)} fallback options: {', '.join(self.tried)}",
        )


class InferenceRequestFailed(TaggingError):
    """The final inference attempt failed."""

    kind = "InferenceRequestFailed"

    def __init__(self, status: int | None, body_excerpt: str, attempts: int) -> None:
        self.status = status
        self.body_excerpt = body_excerpt
        self.attempts = attempts
        status_text = status if status is not None else "no response"
        super().__init__(
            f"Inference request failed after {attempts} attempts ({status_text}): {body_excerpt}",
        )


class MalformedInferenceResult(TaggingError):
    """The inference answer could not be parsed into a property set."""

    kind = "MalformedInferenceResult"


class MetadataCommitFailed(TaggingError):
    """A metadata writer exhausted its attempts without terminal success."""

    kind = "MetadataCommitFailed"

    def __init__(
        self,
        asset_path: str,
        attempts: int,
        writer: str,
        last_error: str = "",
        *,
        commit_attempts: Sequence[object] = (),
    ) -> None:
        self.asset_path = asset_path
        self.attempts = attempts
        self.writer = writer
        self.last_error = last_error
        self.commit_attempts = list(commit_attempts)
        message = f"Failed to update metadata for {asset_path} via {writer} after {attempts} attempts"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)


# Retryable signals. These stay inside the stage that raises them.


class TransientHTTPError(Exception):
    """A non-success response that is worth another attempt."""

    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body[:200]}")


class RenditionNotFound(Exception):
    """The repository answered 404 for a rendition candidate."""

    def __init__(self, candidate: str) -> None:
        self.candidate = candidate
        super().__init__(f"Rendition not found: {candidate}")


class TruncatedPayload(Exception):
    """Fewer bytes arrived than the response advertised."""

    def __init__(self, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(f"Truncated rendition body: expected {expected} bytes, got {received}")


class CommitRejected(Exception):
    """A metadata write completed at transport level but did not report success."""

    def __init__(self, status: object, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(f"Status {status}: {message}")
