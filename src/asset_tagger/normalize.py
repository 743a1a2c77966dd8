"""Parse the model answer into a flat, namespaced property set."""

import json
from typing import Any

from loguru import logger

from asset_tagger.errors import MalformedInferenceResult


def namespaced_key(key: str) -> str:
    """
    Turn the first underscore into a namespace colon.

    Examples:
        >>> namespaced_key("aigen_brand")
        'aigen:brand'
        >>> namespaced_key("aigen_product_type")
        'aigen:product_type'
        >>> namespaced_key("title")
        'title'

    """
    return key.replace("_", ":", 1)


def normalize_result(raw_answer: str | None) -> dict[str, Any]:
    """
    Build the property set from the model's JSON answer.

    An empty answer yields an empty property set. Values are passed through
    untouched; only the top-level keys are renamed.

    Raises:
        MalformedInferenceResult: The answer is not a JSON object.

    Examples:
        >>> normalize_result('{"aigen_color": "red"}')
        {'aigen:color': 'red'}
        >>> normalize_result(None)
        {}

    """
    if raw_answer is None or not raw_answer.strip():
        logger.warning("no_results_from_inference")
        return {}

    try:
        parsed = json.loads(raw_answer)
    except json.JSONDecodeError as exc:
        logger.error("inference_result_not_json", error=str(exc), excerpt=raw_answer[:200])
        msg = f"Inference answer is not valid JSON: {exc}"
        raise MalformedInferenceResult(msg) from exc

    if not isinstance(parsed, dict):
        msg = f"Inference answer must be a JSON object, got {type(parsed).__name__}"
        raise MalformedInferenceResult(msg)

    properties = {namespaced_key(str(key)): value for key, value in parsed.items()}
    logger.debug("inference_result_normalized", keys=list(properties))
    return properties
