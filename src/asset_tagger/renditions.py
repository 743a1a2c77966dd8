"""Fetch the best available rendition of an asset."""

import asyncio
from collections.abc import Sequence
from http import HTTPStatus

import httpx
from loguru import logger

from asset_tagger.config import TaggingSettings
from asset_tagger.errors import (
    InvalidInput,
    NoRenditionAvailable,
    RenditionNotFound,
    TransientHTTPError,
    TruncatedPayload,
)
from asset_tagger.models import AssetRef, FetchedPayload
from asset_tagger.retry import RENDITION_POLICY, RetryPolicy, Sleep, retry_async
from asset_tagger.timeline import RunTimeline


RETRYABLE_FETCH_ERRORS = (httpx.HTTPError, TransientHTTPError, TruncatedPayload, TimeoutError)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RETRYABLE_FETCH_ERRORS)


def _declared_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None or not raw.strip().isdigit():
        return None
    return int(raw)


class RenditionResolver:
    """
    Walk an ordered list of rendition suffixes and return the first one that downloads.

    Each candidate gets its own retry budget. A 404 ends a candidate at once
    and moves on without waiting; any other failure is retried with a
    growing delay and, once the budget is spent, also moves on.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        *,
        settings: TaggingSettings | None = None,
        policy: RetryPolicy = RENDITION_POLICY,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._access_token = access_token
        self._settings = settings or TaggingSettings()
        self._policy = policy
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "User-Agent": self._settings.user_agent,
            "Accept": "image/*",
        }

    async def _fetch_once(self, url: str, candidate: str, index: int) -> FetchedPayload:
        timeout = httpx.Timeout(self._settings.fetch_timeout)
        async with self._client.stream("GET", url, headers=self._headers(), timeout=timeout) as response:
            logger.info("rendition_response", candidate=candidate, status=response.status_code)

            if response.status_code == HTTPStatus.NOT_FOUND:
                raise RenditionNotFound(candidate)

            if not response.is_success:
                await response.aread()
                raise TransientHTTPError(response.status_code, response.text)

            # The body gets its own, shorter deadline than the request itself.
            data = await asyncio.wait_for(response.aread(), timeout=self._settings.body_read_timeout)
            # Content-Length counts encoded bytes, so compare what came over the wire.
            declared = _declared_length(response)
            received = response.num_bytes_downloaded
            if declared is not None and received < declared:
                raise TruncatedPayload(declared, received)

            return FetchedPayload(
                data=data,
                byte_length=len(data),
                content_type=response.headers.get("content-type"),
                candidate=candidate,
                candidate_index=index,
            )

    async def resolve(
        self,
        asset: AssetRef,
        candidates: Sequence[str],
        timeline: RunTimeline | None = None,
    ) -> FetchedPayload:
        """
        Download the first available rendition, in the given order.

        Raises:
            InvalidInput: No candidates were given.
            NoRenditionAvailable: Every candidate was missing or kept failing.

        """
        if not candidates:
            msg = "at least one rendition candidate is required"
            raise InvalidInput(msg)

        logger.info("rendition_resolution_started", candidates=len(candidates))
        tried: list[str] = []

        for index, candidate in enumerate(candidates):
            url = f"{asset.base_url}{asset.path}{candidate}"
            tried.append(candidate)
            logger.info("trying_rendition", position=f"{index + 1}/{len(candidates)}", candidate=candidate)

            def _record(attempt: int, exc: BaseException | None, candidate: str = candidate) -> None:
                if timeline is None or exc is None:
                    return
                timeline.record(
                    "rendition_fetch",
                    "skipped" if isinstance(exc, RenditionNotFound) else "retry",
                    f"{candidate} attempt {attempt + 1}: {exc}",
                    candidate=candidate,
                    attempt=attempt + 1,
                )

            async def _attempt(
                _attempt: int,
                url: str = url,
                candidate: str = candidate,
                index: int = index,
            ) -> FetchedPayload:
                return await self._fetch_once(url, candidate, index)

            try:
                payload = await retry_async(
                    _attempt,
                    self._policy,
                    is_retryable=_is_retryable,
                    sleep=self._sleep,
                    on_attempt=_record,
                    label=f"rendition:{candidate}",
                )
            except RenditionNotFound:
                logger.info("rendition_not_found", candidate=candidate)
                continue
            except RETRYABLE_FETCH_ERRORS as exc:
                logger.warning("rendition_retries_exhausted", candidate=candidate, error=str(exc))
                continue

            logger.info(
                "rendition_downloaded",
                candidate=candidate,
                size=payload.byte_length,
                content_type=payload.content_type,
            )
            return payload

        error = NoRenditionAvailable(asset.path, tried)
        logger.error("no_rendition_available", tried=tried)
        raise error
