"""Turn a tagging configuration mapping into prompt text and a namespace map."""

import json
import posixpath
from collections.abc import Mapping
from typing import Any

from asset_tagger.config import (
    BRAND_KEY,
    DC_NAMESPACE,
    EXCLUDED_CONFIG_KEYS,
    RENDITION_NAMESPACE,
)
from asset_tagger.errors import InvalidInput
from asset_tagger.models import PromptSpec


PROMPT_PREAMBLE = (
    "Please follow these tagging instructions for product images, then return the "
    "corresponding tags in JSON format. Please do not add any markdown or special "
    "formatting characters. Here are the suggested keys: "
)
NAMESPACE_KEY = "namespace"


def _format_config_value(value: Any) -> str:  # noqa: ANN401
    """
    Coerce a configuration value into prompt text.

    Examples:
        >>> _format_config_value(["red", "", "blue"])
        'red, blue'
        >>> _format_config_value(3)
        '3'

    """
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value if str(v).strip())
    return str(value)


def _parse_namespaces(raw: Any) -> dict[str, str]:  # noqa: ANN401
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            msg = f"namespace configuration is not valid JSON: {exc}"
            raise InvalidInput(msg) from exc
    if not isinstance(raw, Mapping):
        msg = "namespace configuration must be an object of prefix -> URI"
        raise InvalidInput(msg)
    namespaces = {str(prefix): str(uri) for prefix, uri in raw.items()}
    namespaces["dc"] = DC_NAMESPACE
    namespaces["rendition"] = RENDITION_NAMESPACE
    return namespaces


def build_prompt(config: Mapping[str, Any], asset_path: str) -> PromptSpec:
    """
    Assemble the tagging prompt for one asset.

    Configuration keys are read in order. ``namespace`` seeds the namespace
    map, transport keys are skipped and every other key becomes a suggested
    output key whose value is appended as an instruction. The brand key also
    gets the asset folder as context, and the file name closes the prompt.

    Args:
        config: Tagging configuration (key -> instruction text)
        asset_path: Repository path of the asset

    Returns:
        PromptSpec with the prompt text and the namespace map

    Examples:
        >>> spec = build_prompt(
        ...     {"aigen_color": "Main color.", "aigen_style": "Style."},
        ...     "/content/dam/shoes/red.jpg",
        ... )
        >>> spec.prompt.endswith("Here is the file name as reference: red.jpg.")
        True
        >>> "aigen_color, aigen_style. Main color. Style. " in spec.prompt
        True

    """
    namespaces = _parse_namespaces({})
    key_path = ""
    values = ""

    for key, value in config.items():
        if key == NAMESPACE_KEY:
            namespaces = _parse_namespaces(value)
            continue
        if key in EXCLUDED_CONFIG_KEYS:
            continue
        key_path += f"{key}/"
        text = _format_config_value(value)
        if key == BRAND_KEY:
            folder = posixpath.dirname(asset_path)
            values += f"{text} Here is the folder path for reference: {folder}. "
        else:
            values += f"{text} "

    key_clause = PROMPT_PREAMBLE + key_path
    last_slash = key_clause.rfind("/")
    if last_slash != -1:
        key_clause = key_clause[:last_slash] + ". "
    prompt = key_clause.replace("/", ", ") + values
    prompt += f" Here is the file name as reference: {posixpath.basename(asset_path)}."

    return PromptSpec(prompt=prompt, namespaces=namespaces)
