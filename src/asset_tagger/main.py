#!/usr/bin/env python3
"""
Asset Tagger: tag repository images with a vision model and write the tags back as metadata.

For one asset it builds a prompt from the tagging configuration, downloads the best
available rendition (falling back through smaller ones), asks the vision model for
JSON tags, and stores them on the asset through the Assets HTTP API. The
metadata node form post is available as a fallback writer.

Requirements:
 - A bearer token for the repository (``--token``, ``accessToken`` or ``GDAM_TOKEN``).
 - A chat-completions style vision endpoint and its API key.

"""
# ruff: noqa: PLR0913

import asyncio
import json
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any, Literal, get_args

from cyclopts import App, Parameter, validators
from loguru import logger

from asset_tagger.config import (
    DEFAULT_AEM_TARGET_URL,
    DEFAULT_INFERENCE_API_KEY,
    DEFAULT_INFERENCE_ENDPOINT,
    TaggingSettings,
)
from asset_tagger.credentials import resolve_access_token
from asset_tagger.errors import InvalidInput
from asset_tagger.models import PipelineResult, TaggingRequest
from asset_tagger.pipeline import TaggingPipeline


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

# Level names used by serverless runtime loggers.
LOG_LEVEL_ALIASES: dict[str, LogLevel] = {
    "warn": "WARNING",
    "verbose": "DEBUG",
    "silly": "DEBUG",
    "trace": "DEBUG",
    "fatal": "CRITICAL",
}
TRUE_FLAGS = frozenset({"true", "1", "yes", "on"})
FALSE_FLAGS = frozenset({"false", "0", "no", "off", ""})

RESPONSE_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
}


# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="asset-tagger",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
    *,
    colorize: bool = True,
) -> None:
    """
    Configure Loguru for console and, optionally, file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored
        colorize: Colour the console sink; off where stderr is collected by a runtime

    """
    # Remove default handler
    logger.remove()

    # Add file logging
    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-asset_tagger.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    # Add console logging
    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=colorize,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def resolve_log_level(raw: Any) -> tuple[LogLevel, bool]:  # noqa: ANN401
    """
    Map a runtime LOG_LEVEL value onto a Loguru level.

    Returns:
        The level and whether ``raw`` was recognised; unknown values give INFO.

    Examples:
        >>> resolve_log_level("warn")
        ('WARNING', True)
        >>> resolve_log_level("loud")
        ('INFO', False)

    """
    name = str(raw).strip()
    if name.lower() in LOG_LEVEL_ALIASES:
        return LOG_LEVEL_ALIASES[name.lower()], True
    if name.upper() in get_args(LogLevel):
        return name.upper(), True  # type: ignore[return-value]
    return "INFO", False


def _parse_flag(raw: Any, name: str) -> bool:  # noqa: ANN401
    if raw is None or isinstance(raw, bool):
        return bool(raw)
    if isinstance(raw, int) and raw in {0, 1}:
        return bool(raw)
    if isinstance(raw, str):
        value = raw.strip().lower()
        if value in TRUE_FLAGS:
            return True
        if value in FALSE_FLAGS:
            return False
    msg = f"{name} must be true or false, got {raw!r}"
    raise InvalidInput(msg)


def _parse_renditions(raw: Any) -> tuple[str, ...] | None:  # noqa: ANN401
    """
    Accept a list, a JSON array text or a single suffix.

    Examples:
        >>> _parse_renditions("/jcr:content/renditions/original")
        ('/jcr:content/renditions/original',)
        >>> _parse_renditions('["/a.png", "/b.png"]')
        ('/a.png', '/b.png')

    """
    if raw is None:
        return None
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        if not text.startswith("["):
            return (text,)
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            msg = f"renditionPaths is not a valid JSON array: {exc}"
            raise InvalidInput(msg) from exc
    if not isinstance(raw, (list, tuple)) or not all(isinstance(item, str) and item for item in raw):
        msg = "renditionPaths must be a list of rendition suffixes"
        raise InvalidInput(msg)
    return tuple(raw) or None


def _parse_prompt_config(raw: Any) -> dict[str, Any] | None:  # noqa: ANN401
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            msg = f"promptConfigs is not valid JSON: {exc}"
            raise InvalidInput(msg) from exc
    if not isinstance(raw, Mapping):
        msg = "promptConfigs must be an object"
        raise InvalidInput(msg)
    return dict(raw)


def request_from_params(params: Mapping[str, Any]) -> TaggingRequest:
    """
    Map trigger parameters onto a TaggingRequest.

    Examples:
        >>> req = request_from_params({
        ...     "assetPath": "/content/dam/a.jpg",
        ...     "promptConfigs": {"aigen_color": "Main color."},
        ...     "aemInstanceUrl": "https://author.example.com",
        ...     "accessToken": "t",
        ... })
        >>> req.asset_path, req.base_url
        ('/content/dam/a.jpg', 'https://author.example.com')

    """
    return TaggingRequest(
        asset_path=params.get("assetPath"),
        prompt_config=_parse_prompt_config(params.get("promptConfigs")),
        base_url=params.get("aemInstanceUrl") or DEFAULT_AEM_TARGET_URL,
        access_token=resolve_access_token(params),
        candidates=_parse_renditions(params.get("renditionPaths")),
    )


def _error_result(asset_path: str | None, exc: Exception, error_type: str) -> PipelineResult:
    return PipelineResult(
        status="error",
        asset_path=asset_path,
        error=str(exc),
        error_type=error_type,
    )


def _response(result: PipelineResult) -> dict[str, Any]:
    return {
        "statusCode": 200 if result.ok else 500,
        "headers": dict(RESPONSE_HEADERS),
        "body": result.model_dump(mode="json"),
    }


async def handle_request_async(
    params: Mapping[str, Any],
    *,
    pipeline: TaggingPipeline | None = None,
) -> dict[str, Any]:
    """
    Serverless-style entry point: parameters in, HTTP-shaped response out.

    Reads ``assetPath``, ``promptConfigs``, ``aemInstanceUrl``, the optional
    ``renditionPaths`` and ``fallbackWriter``, the token parameters,
    ``AZURE_OPENAI_ENDPOINT`` / ``AZURE_OPENAI_API_KEY`` and ``LOG_LEVEL``.
    """
    if (raw_level := params.get("LOG_LEVEL")) is not None:
        level, known = resolve_log_level(raw_level)
        # Serverless runtimes collect stderr only.
        setup_logging(file_log_level="OFF", console_log_level=level, colorize=False)
        if not known:
            logger.warning("unknown_log_level", requested=str(raw_level), using=level)

    asset_path = params.get("assetPath")
    try:
        request = request_from_params(params)
        fallback_writer = _parse_flag(params.get("fallbackWriter"), "fallbackWriter")
    except InvalidInput as exc:
        logger.error("invalid_request", error=str(exc), asset=asset_path)
        return _response(_error_result(asset_path, exc, exc.kind))

    if pipeline is None:
        pipeline = TaggingPipeline(
            params.get("AZURE_OPENAI_ENDPOINT") or DEFAULT_INFERENCE_ENDPOINT,
            params.get("AZURE_OPENAI_API_KEY") or DEFAULT_INFERENCE_API_KEY,
            fallback_on_commit_failure=fallback_writer,
        )

    try:
        result = await pipeline.run(request)
    except Exception as exc:  # noqa: BLE001
        logger.exception("tagging_crashed", error=str(exc), asset=asset_path)
        result = _error_result(asset_path, exc, type(exc).__name__)
    return _response(result)


def handle_request(params: Mapping[str, Any]) -> dict[str, Any]:
    """Synchronous wrapper around handle_request_async."""
    return asyncio.run(handle_request_async(params))


@app.default
def tag(
    asset_path: Annotated[
        str,
        Parameter(
            name=("--asset", "-a"),
            help="Repository path of the asset, e.g. /content/dam/products/shoe.jpg",
        ),
    ],
    config_file: Annotated[
        Path,
        Parameter(
            name=("--config", "-c"),
            validator=validators.Path(exists=True, file_okay=True, dir_okay=False),
            help="JSON file with the tagging configuration (key -> instruction)",
        ),
    ],
    *,
    base_url: Annotated[
        str | None,
        Parameter(name=("--base-url", "-u"), help="Repository base URL. Falls back to AEM_TARGET_URL"),
    ] = DEFAULT_AEM_TARGET_URL,
    token: Annotated[
        str | None,
        Parameter(name=("--token", "-t"), help="Repository bearer token. Will try GDAM_TOKEN if not set"),
    ] = None,
    endpoint: Annotated[
        str | None,
        Parameter(name=("--endpoint", "-e"), help="Vision inference endpoint URL"),
    ] = DEFAULT_INFERENCE_ENDPOINT,
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Inference API key. Will try env vars if not set"),
    ] = DEFAULT_INFERENCE_API_KEY,
    renditions: Annotated[
        list[str] | None,
        Parameter(
            name=("--rendition", "-r"),
            help="Rendition suffix to try, best first (repeat this option). Defaults to the web/thumbnail chain",
        ),
    ] = None,
    fallback_writer: Annotated[
        bool,
        Parameter(
            name=("--fallback-writer",),
            negative="--no-fallback-writer",
            help="Retry a failed Assets API write through the metadata node form post",
        ),
    ] = False,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Tag one repository asset with AI and write the tags to its metadata.

    Behavior:
    - Builds the prompt from --config; the 'namespace' key, if present, sets the XML namespaces.
    - Downloads the first available rendition (--rendition, best first), retrying transient errors.
    - Sends it to the vision endpoint and parses the JSON answer into namespaced properties.
    - Writes them through the Assets HTTP API; --fallback-writer adds the metadata node post.

    Exit status: returns 1 if the run ends with an error result.

    Examples:
        asset-tagger -a /content/dam/shoes/red.jpg -c tagging.json -u https://author.example.com
        asset-tagger -a /content/dam/shoes/red.jpg -c tagging.json -r /jcr:content/renditions/original

    """
    setup_logging(file_log_level=file_log_level, console_log_level=console_log_level, log_folder=log_folder)
    logger.info(
        "starting_asset_tagger",
        asset=asset_path,
        base_url=base_url,
        config=str(config_file),
        endpoint=endpoint,
        api_key_present=bool(api_key),
        token_present=bool(token),
        renditions=renditions,
        fallback_writer=fallback_writer,
    )

    try:
        access_token = resolve_access_token({"accessToken": token} if token else None)
        prompt_config = _parse_prompt_config(config_file.read_text(encoding="utf-8"))
    except InvalidInput as exc:
        logger.error("invalid_arguments", error=str(exc))
        raise SystemExit(1) from exc

    request = TaggingRequest(
        asset_path=asset_path,
        prompt_config=prompt_config,
        base_url=base_url,
        access_token=access_token,
        candidates=tuple(renditions) if renditions else None,
    )
    pipeline = TaggingPipeline(
        endpoint,
        api_key,
        settings=TaggingSettings(),
        fallback_on_commit_failure=fallback_writer,
    )
    result = asyncio.run(pipeline.run(request))

    print(result.model_dump_json(indent=2))  # noqa: T201
    if not result.ok:
        raise SystemExit(1)


if __name__ == "__main__":
    app()
