"""Environment-backed defaults for the tagging pipeline."""

import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


# Configuration defaults
DEFAULT_AEM_TARGET_URL = os.getenv("AEM_TARGET_URL")
DEFAULT_INFERENCE_ENDPOINT = os.getenv("AZURE_OPENAI_ENDPOINT")
DEFAULT_INFERENCE_API_KEY = os.getenv("AZURE_OPENAI_API_KEY")
DEFAULT_FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "30"))
DEFAULT_BODY_READ_TIMEOUT = float(os.getenv("BODY_READ_TIMEOUT", "25"))
DEFAULT_INFERENCE_TIMEOUT = float(os.getenv("INFERENCE_TIMEOUT", "10"))
DEFAULT_COMMIT_TIMEOUT = float(os.getenv("COMMIT_TIMEOUT", "30"))
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.1"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "900"))
DEFAULT_TEMP_DIR = Path(os.getenv("TEMP_DIR", tempfile.gettempdir()))
DEFAULT_PROPERTY_PREFIX = os.getenv("PROPERTY_PREFIX", "aigen")
DEFAULT_USER_AGENT = os.getenv("USER_AGENT", "AITaggingWorker/1.0")

# Highest quality first. Order is preference and is never changed.
DEFAULT_RENDITION_CANDIDATES: tuple[str, ...] = (
    "/jcr:content/renditions/cq5dam.web.1280.1280.jpeg",
    "/jcr:content/renditions/cq5dam.thumbnail.319.319.png",
    "/jcr:content/renditions/cq5dam.thumbnail.140.100.png",
    "/jcr:content/renditions/cq5dam.thumbnail.48.48.png",
)

DC_NAMESPACE = "http://purl.org/dc/elements/1.1/"
RENDITION_NAMESPACE = "http://ns.adobe.com/rendition/1.0/"
EXCLUDED_CONFIG_KEYS = frozenset({"embedBinaryLimit", "target", "userData", "worker", "fmt"})
BRAND_KEY = "aigen_brand"


class TaggingSettings(BaseModel):
    """Timeouts, model parameters and naming shared by all pipeline stages."""

    model_config = ConfigDict(frozen=True)

    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    body_read_timeout: float = DEFAULT_BODY_READ_TIMEOUT
    inference_timeout: float = DEFAULT_INFERENCE_TIMEOUT
    commit_timeout: float = DEFAULT_COMMIT_TIMEOUT
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    temp_dir: Path = DEFAULT_TEMP_DIR
    property_prefix: str = DEFAULT_PROPERTY_PREFIX
    user_agent: str = DEFAULT_USER_AGENT
    rendition_candidates: tuple[str, ...] = Field(default=DEFAULT_RENDITION_CANDIDATES)

    @property
    def status_property(self) -> str:
        return f"{self.property_prefix}:status"
