"""Tests for rendition fallback resolution."""

import asyncio
import gzip
import os

import httpx
import pytest

from asset_tagger.config import DEFAULT_RENDITION_CANDIDATES, TaggingSettings
from asset_tagger.errors import InvalidInput, NoRenditionAvailable
from asset_tagger.renditions import RenditionResolver
from asset_tagger.timeline import RunTimeline


JPEG_BYTES = b"\xff\xd8\xff\xe0stubjpeg"


class SlowStream(httpx.AsyncByteStream):
    """Body that never arrives within a short read deadline."""

    async def __aiter__(self):  # noqa: ANN204
        await asyncio.sleep(5)
        yield b"late"


def _suffix(request: httpx.Request, asset) -> str:  # noqa: ANN001
    return request.url.path.removeprefix(asset.path)


def _resolve(mock_client, handler, asset, candidates, **kwargs):  # noqa: ANN001, ANN003, ANN202
    async def scenario():  # noqa: ANN202
        async with mock_client(handler) as client:
            resolver = RenditionResolver(client, "secret-token", **kwargs)
            return await resolver.resolve(asset, candidates)

    return asyncio.run(scenario())


def test_first_candidate_success_uses_one_request(mock_client, sleeps, asset) -> None:
    """A 200 on the first candidate returns its payload with auth and accept headers sent."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=JPEG_BYTES, headers={"content-type": "image/jpeg"})

    payload = _resolve(mock_client, handler, asset, DEFAULT_RENDITION_CANDIDATES, sleep=sleeps)

    assert payload.data == JPEG_BYTES
    assert payload.byte_length == len(JPEG_BYTES)
    assert payload.content_type == "image/jpeg"
    assert payload.candidate == DEFAULT_RENDITION_CANDIDATES[0]
    assert payload.candidate_index == 0
    assert len(requests) == 1
    assert str(requests[0].url) == (
        "https://author.example.com/content/dam/shoes/red-sneaker.jpg"
        "/jcr:content/renditions/cq5dam.web.1280.1280.jpeg"
    )
    assert requests[0].headers["Authorization"] == "Bearer secret-token"
    assert requests[0].headers["Accept"] == "image/*"
    assert sleeps.delays == []


def test_not_found_candidates_are_skipped_without_retries(mock_client, sleeps, asset) -> None:
    """Candidates 1-3 answer 404, candidate 4 answers 200: exactly four requests, no waits."""
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        suffix = _suffix(request, asset)
        seen.append(suffix)
        if suffix == DEFAULT_RENDITION_CANDIDATES[3]:
            return httpx.Response(200, content=b"tiny", headers={"content-type": "image/png"})
        return httpx.Response(404)

    payload = _resolve(mock_client, handler, asset, DEFAULT_RENDITION_CANDIDATES, sleep=sleeps)

    assert payload.candidate == DEFAULT_RENDITION_CANDIDATES[3]
    assert payload.data == b"tiny"
    assert seen == list(DEFAULT_RENDITION_CANDIDATES)
    assert sleeps.delays == []


def test_server_errors_are_retried_with_growing_delay(mock_client, sleeps, asset) -> None:
    """A 503 is retried on the same candidate, waiting attempt * 2 seconds."""
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(_suffix(request, asset))
        if len(calls) < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, content=JPEG_BYTES)

    payload = _resolve(mock_client, handler, asset, DEFAULT_RENDITION_CANDIDATES, sleep=sleeps)

    assert payload.candidate == DEFAULT_RENDITION_CANDIDATES[0]
    assert calls == [DEFAULT_RENDITION_CANDIDATES[0]] * 3
    assert sleeps.delays == [2.0, 4.0]


def test_exhausted_candidate_moves_to_next(mock_client, sleeps, asset) -> None:
    """Three failures on a candidate move on to the next one in list order."""
    candidates = ("/r/high.jpeg", "/r/low.png")
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        suffix = _suffix(request, asset)
        calls.append(suffix)
        if suffix == "/r/high.jpeg":
            return httpx.Response(500, text="boom")
        return httpx.Response(200, content=b"low")

    payload = _resolve(mock_client, handler, asset, candidates, sleep=sleeps)

    assert payload.candidate == "/r/low.png"
    assert payload.candidate_index == 1
    assert calls == ["/r/high.jpeg"] * 3 + ["/r/low.png"]


def test_transport_errors_are_retried(mock_client, sleeps, asset) -> None:
    """A connection error costs one attempt on the same candidate."""
    attempts = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, content=JPEG_BYTES)

    payload = _resolve(mock_client, handler, asset, ("/r/only.jpeg",), sleep=sleeps)

    assert payload.data == JPEG_BYTES
    assert attempts["n"] == 2


def test_all_candidates_failing_reports_what_was_tried(mock_client, sleeps, asset) -> None:
    """NoRenditionAvailable names every candidate in order."""
    candidates = ("/r/a.jpeg", "/r/b.png")

    def handler(request: httpx.Request) -> httpx.Response:
        if _suffix(request, asset) == "/r/a.jpeg":
            return httpx.Response(404)
        return httpx.Response(502)

    with pytest.raises(NoRenditionAvailable) as excinfo:
        _resolve(mock_client, handler, asset, candidates, sleep=sleeps)

    assert excinfo.value.tried == ["/r/a.jpeg", "/r/b.png"]
    assert "/r/a.jpeg" in str(excinfo.value)
    assert "/r/b.png" in str(excinfo.value)


def test_truncated_body_is_a_failed_attempt(mock_client, sleeps, asset) -> None:
    """Fewer bytes than Content-Length never counts as a partial success."""
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(200, content=b"abc", headers={"content-length": "100"})
        return httpx.Response(200, content=JPEG_BYTES)

    payload = _resolve(mock_client, handler, asset, ("/r/only.jpeg",), sleep=sleeps)

    assert payload.data == JPEG_BYTES
    assert calls["n"] == 2


def test_gzip_encoded_body_is_not_mistaken_for_truncation(mock_client, sleeps, asset) -> None:
    """Content-Length counts the compressed bytes; the decoded image may be shorter."""
    image = os.urandom(4000)
    encoded = gzip.compress(image)
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(
            200,
            content=encoded,
            headers={"content-encoding": "gzip", "content-type": "image/jpeg"},
        )

    payload = _resolve(mock_client, handler, asset, ("/r/only.jpeg",), sleep=sleeps)

    assert payload.data == image
    assert payload.byte_length == len(image)
    assert calls["n"] == 1
    assert sleeps.delays == []


def test_slow_body_hits_read_deadline_and_falls_back(mock_client, sleeps, asset) -> None:
    """A body that stalls past the read timeout fails that candidate, not the run."""
    settings = TaggingSettings(body_read_timeout=0.01)

    def handler(request: httpx.Request) -> httpx.Response:
        if _suffix(request, asset) == "/r/slow.jpeg":
            return httpx.Response(200, stream=SlowStream())
        return httpx.Response(200, content=b"quick")

    payload = _resolve(
        mock_client,
        handler,
        asset,
        ("/r/slow.jpeg", "/r/fast.png"),
        sleep=sleeps,
        settings=settings,
    )

    assert payload.candidate == "/r/fast.png"
    assert payload.data == b"quick"


def test_retries_are_recorded_on_the_timeline(mock_client, sleeps, asset) -> None:
    """A missing candidate shows up as a skipped rendition_fetch entry."""
    timeline = RunTimeline()

    def handler(request: httpx.Request) -> httpx.Response:
        if _suffix(request, asset) == "/r/a.jpeg":
            return httpx.Response(404)
        return httpx.Response(200, content=b"ok")

    async def scenario():  # noqa: ANN202
        async with mock_client(handler) as client:
            resolver = RenditionResolver(client, "t", sleep=sleeps)
            return await resolver.resolve(asset, ("/r/a.jpeg", "/r/b.png"), timeline)

    asyncio.run(scenario())

    assert [(e.stage, e.status) for e in timeline.entries] == [("rendition_fetch", "skipped")]


def test_empty_candidate_list_is_invalid_input(mock_client, sleeps, asset) -> None:
    """Nothing to try is a caller error, not a missing rendition."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200)

    with pytest.raises(InvalidInput):
        _resolve(mock_client, handler, asset, (), sleep=sleeps)
