"""Run one asset through prompt, rendition, inference, normalization and commit."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from asset_tagger.config import TaggingSettings
from asset_tagger.errors import InvalidInput, MetadataCommitFailed, TaggingError
from asset_tagger.inference import InferenceClient
from asset_tagger.metadata import MetadataCommitter
from asset_tagger.models import (
    AssetRef,
    CommitAttempt,
    FetchedPayload,
    PipelineResult,
    PipelineStage,
    PromptSpec,
    TaggingRequest,
)
from asset_tagger.normalize import normalize_result
from asset_tagger.prompt import build_prompt
from asset_tagger.renditions import RenditionResolver
from asset_tagger.retry import Sleep
from asset_tagger.staging import PayloadStager
from asset_tagger.timeline import RunTimeline


DEFAULT_MEDIA_TYPE = "image/jpeg"


@dataclass
class PipelineRun:
    """State owned by a single invocation; dropped when ``run`` returns."""

    request: TaggingRequest
    timeline: RunTimeline = field(default_factory=RunTimeline)
    asset: AssetRef | None = None
    prompt_spec: PromptSpec | None = None
    payload: FetchedPayload | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    commit_attempts: list[CommitAttempt] = field(default_factory=list)
    staged_paths: list[Path] = field(default_factory=list)
    committed: bool = False


def _media_type(payload: FetchedPayload) -> str:
    """
    Media type for the data URL, falling back to JPEG.

    Examples:
        >>> p = FetchedPayload(data=b"", byte_length=0, content_type="image/png; q=1",
        ...                    candidate="/x", candidate_index=0)
        >>> _media_type(p)
        'image/png'

    """
    content_type = (payload.content_type or "").split(";", 1)[0].strip().lower()
    return content_type if content_type.startswith("image/") else DEFAULT_MEDIA_TYPE


def _validate(request: TaggingRequest) -> None:
    missing = [
        name
        for name, value in (
            ("asset_path", request.asset_path),
            ("prompt_config", request.prompt_config),
            ("base_url", request.base_url),
            ("access_token", request.access_token),
        )
        if value is None or (isinstance(value, str) and not value.strip())
    ]
    if missing:
        msg = f"Missing required input: {', '.join(missing)}"
        raise InvalidInput(msg)


class TaggingPipeline:
    """
    Linear tagging pipeline for one asset per run.

    Stages run strictly in order and never loop back. Each network stage
    spends its own retry budget; nothing is retried across stages. Empty
    model output skips the commit and still counts as success. The staged
    rendition file is removed exactly once per run, whatever happened.

    Args:
        inference_endpoint: Vision chat-completions endpoint
        inference_api_key: Key sent in the ``api-key`` header
        settings: Timeouts, model parameters and naming
        client: Shared HTTP client; a private one is opened per run if omitted
        stager: Local staging of the rendition bytes
        sleep: Awaitable sleep used for every retry wait
        fallback_on_commit_failure: Use the metadata-node writer when the
            Assets API writer gives up

    """

    def __init__(
        self,
        inference_endpoint: str | None,
        inference_api_key: str | None,
        *,
        settings: TaggingSettings | None = None,
        client: httpx.AsyncClient | None = None,
        stager: PayloadStager | None = None,
        sleep: Sleep = asyncio.sleep,
        fallback_on_commit_failure: bool = False,
    ) -> None:
        self.settings = settings or TaggingSettings()
        self._inference_endpoint = inference_endpoint
        self._inference_api_key = inference_api_key
        self._client = client
        self._stager = stager or PayloadStager(self.settings.temp_dir)
        self._sleep = sleep
        self.fallback_on_commit_failure = fallback_on_commit_failure

    @asynccontextmanager
    async def _client_scope(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(follow_redirects=True) as client:
            yield client

    async def run(self, request: TaggingRequest) -> PipelineResult:
        """
        Process one asset and report the outcome.

        Stage errors are returned as an ``error`` result with the timeline
        recorded up to the failure; ``PipelineResult.raise_for_status``
        re-raises them. Anything else propagates after cleanup.
        """
        run = PipelineRun(request=request)
        run.timeline.record(PipelineStage.START, "info", f"Processing asset: {request.asset_path}")
        error: TaggingError | None = None

        with logger.contextualize(asset=request.asset_path):
            logger.info("tagging_started", base_url=request.base_url)
            try:
                async with self._client_scope() as client:
                    await self._execute(run, client)
            except TaggingError as exc:
                error = exc
                run.timeline.record(PipelineStage.FAILED, "failed", str(exc), error_type=exc.kind)
                logger.error("tagging_failed", error_type=exc.kind, error=str(exc))
            finally:
                self._cleanup(run)

            result = self._result(run, error)
            logger.info(
                "tagging_finished",
                status=result.status,
                properties=result.properties_count,
                processing_time_ms=result.processing_time_ms,
            )
        return result

    async def _execute(self, run: PipelineRun, client: httpx.AsyncClient) -> None:
        request = run.request
        timeline = run.timeline
        _validate(request)
        token = request.access_token or ""
        asset = AssetRef(path=request.asset_path or "", base_url=request.base_url or "")
        run.asset = asset

        # Prompt
        run.prompt_spec = build_prompt(request.prompt_config or {}, asset.path)
        timeline.record(
            PipelineStage.PROMPT_BUILT,
            "ok",
            f"Generated prompt length: {len(run.prompt_spec.prompt)} characters",
            namespaces=sorted(run.prompt_spec.namespaces),
        )
        logger.debug("prompt_built", prompt=run.prompt_spec.prompt)

        # Rendition
        resolver = RenditionResolver(client, token, settings=self.settings, sleep=self._sleep)
        candidates = request.candidates or self.settings.rendition_candidates
        run.payload = await resolver.resolve(asset, candidates, timeline)
        timeline.record(
            PipelineStage.RENDITION_FETCHED,
            "ok",
            f"Used rendition: {run.payload.candidate}",
            candidate=run.payload.candidate,
            size=run.payload.byte_length,
            content_type=run.payload.content_type,
        )

        # Staging; file I/O runs off the event loop.
        staged = await asyncio.to_thread(self._stager.stage, run.payload.data, asset.path)
        run.staged_paths.append(staged)
        payload_b64 = await asyncio.to_thread(self._stager.encode, staged)
        timeline.record(PipelineStage.STAGED, "ok", f"Base64 length: {len(payload_b64)}", path=str(staged))

        # Inference
        inference = InferenceClient(
            client,
            self._inference_endpoint,
            self._inference_api_key,
            settings=self.settings,
            sleep=self._sleep,
        )
        answer = await inference.infer(
            run.prompt_spec,
            payload_b64,
            media_type=_media_type(run.payload),
            timeline=timeline,
        )
        timeline.record(
            PipelineStage.INFERRED,
            "ok",
            "Inference returned content" if answer else "Inference returned no content",
        )

        # Normalization
        run.properties = normalize_result(answer)
        timeline.record(PipelineStage.NORMALIZED, "ok", f"{len(run.properties)} properties", keys=list(run.properties))

        # Commit
        if not run.properties:
            timeline.record(
                PipelineStage.SKIPPED_NO_PROPERTIES,
                "skipped",
                "No properties to update - inference returned empty results",
            )
            logger.info("commit_skipped_no_properties")
        else:
            run.properties[self.settings.status_property] = "processed"
            committer = MetadataCommitter.for_client(client, token, settings=self.settings, sleep=self._sleep)
            await self._commit(run, committer)

        timeline.record(PipelineStage.DONE, "ok", "Tagging completed")

    async def _commit(self, run: PipelineRun, committer: MetadataCommitter) -> None:
        asset = run.asset
        if asset is None:  # pragma: no cover - set before any commit
            msg = "asset reference missing"
            raise InvalidInput(msg)
        timeline = run.timeline
        try:
            run.commit_attempts.extend(await committer.commit(asset, run.properties, timeline))
        except MetadataCommitFailed as exc:
            run.commit_attempts.extend(exc.commit_attempts)
            if not self.fallback_on_commit_failure:
                raise
            timeline.record(
                PipelineStage.COMMIT_ATTEMPTED,
                "retry",
                f"Primary write failed, using {committer.secondary.name}: {exc}",
            )
            logger.warning("commit_falling_back", writer=committer.secondary.name, error=str(exc))
            try:
                run.commit_attempts.extend(await committer.commit_fallback(asset, run.properties, timeline))
            except MetadataCommitFailed as fallback_exc:
                run.commit_attempts.extend(fallback_exc.commit_attempts)
                raise

        run.committed = True
        timeline.record(
            PipelineStage.COMMIT_ATTEMPTED,
            "ok",
            f"Metadata updated: {len(run.properties)} properties",
            attempts=len(run.commit_attempts),
        )

    def _cleanup(self, run: PipelineRun) -> None:
        try:
            errors = self._stager.cleanup(run.staged_paths)
        except Exception as exc:  # noqa: BLE001
            logger.opt(exception=exc).warning("cleanup_failed", error=str(exc))
            errors = [str(exc)]
        if errors:
            run.timeline.record(PipelineStage.CLEANUP, "failed", "; ".join(errors))
        else:
            run.timeline.record(PipelineStage.CLEANUP, "ok", f"Removed {len(run.staged_paths)} staged files")

    def _result(self, run: PipelineRun, error: TaggingError | None) -> PipelineResult:
        result = PipelineResult(
            status="error" if error else "success",
            asset_path=run.request.asset_path,
            updated_properties=list(run.properties) if error is None else [],
            properties_count=len(run.properties) if error is None else 0,
            processing_time_ms=run.timeline.elapsed_ms,
            rendition=run.payload.candidate if run.payload else None,
            commit_attempts=list(run.commit_attempts),
            timeline=run.timeline.as_list(),
            error=str(error) if error else None,
            error_type=error.kind if error else None,
        )
        result._exception = error  # noqa: SLF001
        return result
