"""Pick up an already-issued repository access token."""

import json
import os
from collections.abc import Mapping
from typing import Any

from loguru import logger

from asset_tagger.errors import InvalidInput


TOKEN_ENV_VAR = "GDAM_TOKEN"


def resolve_access_token(params: Mapping[str, Any] | None = None) -> str:
    """
    Return the bearer token for repository calls.

    Looks at an explicit ``accessToken`` parameter first, then at the
    ``accessToken`` field of the ``GDAM_TOKEN`` JSON (parameter, then
    environment). Exchanging service credentials for a token is left to
    whoever provisions ``GDAM_TOKEN``.

    Raises:
        InvalidInput: No token could be found.

    Examples:
        >>> resolve_access_token({"accessToken": "abc"})
        'abc'
        >>> resolve_access_token({"GDAM_TOKEN": '{"accessToken": "xyz"}'})
        'xyz'

    """
    params = params or {}
    if token := params.get("accessToken"):
        logger.debug("access_token_from_params")
        return str(token)

    raw = params.get(TOKEN_ENV_VAR) or os.getenv(TOKEN_ENV_VAR)
    if not raw:
        msg = f"accessToken or {TOKEN_ENV_VAR} is required"
        raise InvalidInput(msg)

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            msg = f"{TOKEN_ENV_VAR} is not valid JSON"
            raise InvalidInput(msg) from exc

    token = raw.get("accessToken") if isinstance(raw, Mapping) else None
    if not token:
        msg = f"{TOKEN_ENV_VAR} carries no accessToken; service credential exchange is not supported"
        raise InvalidInput(msg)

    logger.debug("access_token_from_gdam_token")
    return str(token)
