"""
Write a property set back to the asset repository.

Two writers share one capability:

- ``AssetsApiWriter`` (primary) updates the asset through the Assets HTTP
  API. Only an embedded ``status.code`` of 200 in the response body counts
  as success.
- ``MetadataNodeWriter`` (secondary) posts form fields straight to the
  asset's metadata node. A 2xx response is success; there is no embedded
  status on this path.

``MetadataCommitter`` exposes both. It never falls back on its own; the
caller decides whether and when to use the secondary writer.
"""

import asyncio
import json
from collections.abc import Mapping
from http import HTTPStatus
from typing import Any, Protocol

import httpx
from loguru import logger

from asset_tagger.config import TaggingSettings
from asset_tagger.errors import CommitRejected, MetadataCommitFailed
from asset_tagger.models import AssetRef, CommitAttempt, CommitOutcome
from asset_tagger.retry import COMMIT_POLICY, RetryPolicy, Sleep, retry_async
from asset_tagger.timeline import RunTimeline


METADATA_PREFIX = "metadata/"
METADATA_NODE_SUFFIX = "/jcr:content/metadata"
ASSETS_API_ROOT = "/api/assets"
STATUS_CODE_FIELD = "status.code"
STATUS_MESSAGE_FIELD = "status.message"


class MetadataWriter(Protocol):
    """Something that can persist a property set for an asset."""

    name: str

    async def write(
        self,
        asset: AssetRef,
        properties: Mapping[str, Any],
        timeline: RunTimeline | None = None,
    ) -> list[CommitAttempt]: ...


def prefixed_properties(properties: Mapping[str, Any]) -> dict[str, Any]:
    """
    Place every key under the asset's metadata subtree.

    Examples:
        >>> prefixed_properties({"aigen:color": "red"})
        {'metadata/aigen:color': 'red'}

    """
    return {f"{METADATA_PREFIX}{key}": value for key, value in properties.items()}


def _form_scalar(value: Any) -> str:  # noqa: ANN401
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value)
    return "" if value is None else str(value)


def _form_value(value: Any) -> str | list[str]:  # noqa: ANN401
    if isinstance(value, (list, tuple)):
        return [_form_scalar(item) for item in value]
    return _form_scalar(value)


def form_fields(properties: Mapping[str, Any]) -> dict[str, str | list[str]]:
    """
    Encode properties as form fields, one entry per array item.

    Examples:
        >>> form_fields({"aigen:tags": ["a", "b"], "aigen:count": 2})
        {'aigen:tags': ['a', 'b'], 'aigen:count': '2'}

    """
    return {key: _form_value(value) for key, value in properties.items()}


class _RetryingWriter:
    """Shared attempt bookkeeping for both writers."""

    name = "writer"

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        *,
        settings: TaggingSettings | None = None,
        policy: RetryPolicy = COMMIT_POLICY,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._access_token = access_token
        self._settings = settings or TaggingSettings()
        self._policy = policy
        self._sleep = sleep

    async def _write_once(self, asset: AssetRef, properties: Mapping[str, Any]) -> None:
        raise NotImplementedError

    async def write(
        self,
        asset: AssetRef,
        properties: Mapping[str, Any],
        timeline: RunTimeline | None = None,
    ) -> list[CommitAttempt]:
        """
        Persist ``properties`` with the commit retry cadence.

        Returns:
            The attempts made, the last one being the terminal success.

        Raises:
            MetadataCommitFailed: No attempt reached terminal success.

        """
        attempts: list[CommitAttempt] = []
        logger.info("metadata_update_started", writer=self.name, properties=len(properties))

        def _record(attempt: int, exc: BaseException | None) -> None:
            if exc is None:
                entry = CommitAttempt(
                    writer=self.name,
                    attempt=attempt + 1,
                    outcome=CommitOutcome.TERMINAL_SUCCESS,
                )
            else:
                entry = CommitAttempt(
                    writer=self.name,
                    attempt=attempt + 1,
                    outcome=CommitOutcome.TRANSIENT_FAILURE,
                    detail=str(exc),
                )
            attempts.append(entry)
            if timeline is not None:
                timeline.record(
                    "metadata_commit",
                    "ok" if exc is None else "retry",
                    f"{self.name} attempt {attempt + 1}: {entry.outcome}",
                    writer=self.name,
                    attempt=attempt + 1,
                    detail=entry.detail,
                )

        async def _attempt(attempt: int) -> None:
            logger.debug("metadata_update_attempt", writer=self.name, attempt=attempt + 1)
            await self._write_once(asset, properties)

        try:
            await retry_async(
                _attempt,
                self._policy,
                is_retryable=lambda exc: isinstance(exc, (httpx.HTTPError, CommitRejected)),
                sleep=self._sleep,
                on_attempt=_record,
                label=f"commit:{self.name}",
            )
        except (httpx.HTTPError, CommitRejected) as exc:
            if attempts:
                attempts[-1] = attempts[-1].model_copy(update={"outcome": CommitOutcome.TERMINAL_FAILURE})
            logger.error("metadata_update_failed", writer=self.name, attempts=len(attempts), error=str(exc))
            raise MetadataCommitFailed(
                asset.path,
                len(attempts),
                self.name,
                str(exc),
                commit_attempts=attempts,
            ) from exc

        logger.info("metadata_update_succeeded", writer=self.name, asset=asset.name, attempts=len(attempts))
        return attempts


class AssetsApiWriter(_RetryingWriter):
    """Primary writer: ``PUT /api/assets/...`` with an embedded status check."""

    name = "assets_api"

    def url_for(self, asset: AssetRef) -> str:
        return f"{asset.base_url}{ASSETS_API_ROOT}{asset.api_path}"

    async def _write_once(self, asset: AssetRef, properties: Mapping[str, Any]) -> None:
        response = await self._client.put(
            self.url_for(asset),
            json={"class": "asset", "properties": prefixed_properties(properties)},
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._access_token}",
                "User-Agent": self._settings.user_agent,
                "Accept": "application/json",
                "Cache-Control": "no-cache",
            },
            timeout=self._settings.commit_timeout,
        )
        logger.info("assets_api_response", status=response.status_code)

        text = response.text
        if not text.strip():
            raise CommitRejected(response.status_code, "empty response body")
        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CommitRejected(response.status_code, text[:200]) from exc

        embedded = body.get("properties") if isinstance(body, dict) else None
        if not isinstance(embedded, dict):
            raise CommitRejected(response.status_code, "response carries no status properties")

        code = embedded.get(STATUS_CODE_FIELD)
        message = str(embedded.get(STATUS_MESSAGE_FIELD) or response.reason_phrase)
        # Only the embedded status decides; bool is excluded since True == 1.
        terminal_success = (
            response.is_success
            and isinstance(code, int)
            and not isinstance(code, bool)
            and code == HTTPStatus.OK
        )
        if not terminal_success:
            raise CommitRejected(code if code is not None else response.status_code, message)


class MetadataNodeWriter(_RetryingWriter):
    """Secondary writer: form post to the asset's metadata node."""

    name = "metadata_node"

    def url_for(self, asset: AssetRef) -> str:
        return f"{asset.base_url}{asset.path}{METADATA_NODE_SUFFIX}"

    async def _write_once(self, asset: AssetRef, properties: Mapping[str, Any]) -> None:
        response = await self._client.post(
            self.url_for(asset),
            data=form_fields(properties),
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/x-www-form-urlencoded",
                "User-Agent": self._settings.user_agent,
            },
            timeout=self._settings.commit_timeout,
        )
        logger.info("metadata_node_response", status=response.status_code)
        if not response.is_success:
            raise CommitRejected(response.status_code, response.text[:200] or response.reason_phrase)


class MetadataCommitter:
    """Entry points for the primary write and the explicit fallback write."""

    def __init__(self, primary: MetadataWriter, secondary: MetadataWriter) -> None:
        self.primary = primary
        self.secondary = secondary

    @classmethod
    def for_client(
        cls,
        client: httpx.AsyncClient,
        access_token: str,
        *,
        settings: TaggingSettings | None = None,
        policy: RetryPolicy = COMMIT_POLICY,
        sleep: Sleep = asyncio.sleep,
    ) -> "MetadataCommitter":
        kwargs: dict[str, Any] = {"settings": settings, "policy": policy, "sleep": sleep}
        return cls(
            AssetsApiWriter(client, access_token, **kwargs),
            MetadataNodeWriter(client, access_token, **kwargs),
        )

    async def commit(
        self,
        asset: AssetRef,
        properties: Mapping[str, Any],
        timeline: RunTimeline | None = None,
    ) -> list[CommitAttempt]:
        return await self.primary.write(asset, properties, timeline)

    async def commit_fallback(
        self,
        asset: AssetRef,
        properties: Mapping[str, Any],
        timeline: RunTimeline | None = None,
    ) -> list[CommitAttempt]:
        return await self.secondary.write(asset, properties, timeline)
