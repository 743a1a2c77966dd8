"""Vision inference client: one image plus one prompt in, answer text out."""

import asyncio
from typing import Any

import httpx
from loguru import logger

from asset_tagger.config import TaggingSettings
from asset_tagger.errors import InferenceRequestFailed, InvalidInput, TransientHTTPError
from asset_tagger.models import PromptSpec
from asset_tagger.retry import INFERENCE_POLICY, RetryPolicy, Sleep, retry_async
from asset_tagger.timeline import RunTimeline


BODY_EXCERPT_CHARS = 500


def extract_answer(payload: Any) -> str | None:  # noqa: ANN401
    """
    Return the content of the first choice, or None when there is none.

    Examples:
        >>> extract_answer({"choices": [{"message": {"content": "a"}}, {"message": {"content": "b"}}]})
        'a'
        >>> extract_answer({"choices": []}) is None
        True

    """
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, str) or not content.strip():
        return None
    return content


class InferenceClient:
    """Send the prompt and rendition to a chat-completions style vision endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str | None,
        api_key: str | None,
        *,
        settings: TaggingSettings | None = None,
        policy: RetryPolicy = INFERENCE_POLICY,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._endpoint = endpoint
        self._api_key = api_key
        self._settings = settings or TaggingSettings()
        self._policy = policy
        self._sleep = sleep

    def _request_body(self, prompt_spec: PromptSpec, payload_b64: str, media_type: str) -> dict[str, Any]:
        return {
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt_spec.prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{media_type};base64,{payload_b64}"},
                        },
                    ],
                },
            ],
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
        }

    async def _post_once(self, body: dict[str, Any]) -> str | None:
        response = await self._client.post(
            self._endpoint,  # type: ignore[arg-type]
            json=body,
            headers={
                "Content-Type": "application/json",
                "api-key": self._api_key or "",
                "User-Agent": self._settings.user_agent,
            },
            timeout=self._settings.inference_timeout,
        )
        if not response.is_success:
            raise TransientHTTPError(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            # A 2xx with an unreadable body is treated like a failed attempt.
            raise TransientHTTPError(response.status_code, response.text) from exc
        return extract_answer(payload)

    async def infer(
        self,
        prompt_spec: PromptSpec,
        payload_b64: str,
        *,
        media_type: str = "image/jpeg",
        timeline: RunTimeline | None = None,
    ) -> str | None:
        """
        Ask the model to tag the image.

        Returns:
            The first answer's text, or None when the model answered with nothing.

        Raises:
            InvalidInput: Endpoint or API key are not configured.
            InferenceRequestFailed: The last attempt failed.

        """
        if not self._endpoint or not self._api_key:
            msg = "inference endpoint and API key are required"
            raise InvalidInput(msg)

        body = self._request_body(prompt_spec, payload_b64, media_type)
        attempts = 0

        def _record(attempt: int, exc: BaseException | None) -> None:
            nonlocal attempts
            attempts = attempt + 1
            if timeline is not None and exc is not None:
                timeline.record("inference", "retry", f"attempt {attempt + 1}: {exc}", attempt=attempt + 1)

        async def _attempt(_attempt: int) -> str | None:
            return await self._post_once(body)

        try:
            answer = await retry_async(
                _attempt,
                self._policy,
                is_retryable=lambda exc: isinstance(exc, (httpx.HTTPError, TransientHTTPError)),
                sleep=self._sleep,
                on_attempt=_record,
                label="inference",
            )
        except TransientHTTPError as exc:
            logger.error("inference_failed", status=exc.status, attempts=attempts)
            raise InferenceRequestFailed(exc.status, exc.body[:BODY_EXCERPT_CHARS], attempts) from exc
        except httpx.HTTPError as exc:
            logger.error("inference_transport_failed", error=str(exc), attempts=attempts)
            raise InferenceRequestFailed(None, str(exc)[:BODY_EXCERPT_CHARS], attempts) from exc

        if answer is None:
            logger.warning("inference_returned_no_content", attempts=attempts)
        else:
            logger.info("inference_completed", attempts=attempts, answer_chars=len(answer))
        return answer
