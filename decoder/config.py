"""
Runtime configuration for the decoder service.

Values come from the environment (``.env`` is loaded by main.py through
python-dotenv). ``load_settings()`` is called per request so a changed
environment is picked up without a restart.
"""

import os
import re
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlsplit

from decoder.errors import ConfigurationError

DEFAULT_API_VERSION = "2024-06-01"
DEFAULT_SEARCH_API_VERSION = "2023-11-01"

_DEPLOYMENT_IN_URL = re.compile(r"/openai/deployments/([^/?#]+)")
_TRUTHY = {"1", "true", "yes", "on"}


def _env(*keys: str, default: str = "") -> str:
    """First non-empty value among ``keys``."""
    for key in keys:
        value = (os.getenv(key) or "").strip()
        if value:
            return value
    return default


def _flag(key: str) -> bool:
    return _env(key).lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    endpoint: str
    api_key: str
    deployment: str
    fallback_deployment: str
    api_version: str
    use_max_completion_tokens: bool
    search_endpoint: str
    search_index: str
    search_key: str
    search_api_version: str
    debug_bypass: bool
    docintel_endpoint: str = ""
    docintel_key: str = ""

    @property
    def retrieval_enabled(self) -> bool:
        return bool(self.search_endpoint and self.search_index and self.search_key)

    def resolve_provider(self) -> Tuple[str, str]:
        """
        Return (azure_endpoint, primary_deployment).

        Accepts either a resource root (``https://x.openai.azure.com``) or a
        full deployment URL; in the latter case the resource root is used
        and the deployment name is read from the URL unless one was set
        explicitly.

        Raises:
            ConfigurationError: endpoint/key missing, or no deployment known.
        """
        if not self.endpoint or not self.api_key:
            raise ConfigurationError("Missing Azure OpenAI endpoint or api key")

        parts = urlsplit(self.endpoint.rstrip("/"))
        if not parts.scheme or not parts.netloc:
            raise ConfigurationError(f"Invalid Azure OpenAI endpoint: {self.endpoint[:120]}")
        root = f"{parts.scheme}://{parts.netloc}"

        deployment = self.deployment
        match = _DEPLOYMENT_IN_URL.search(parts.path)
        if match and not deployment:
            deployment = match.group(1)
        if not deployment:
            raise ConfigurationError(
                "Missing AZURE_OPENAI_DEPLOYMENT when using base endpoint"
            )
        return root, deployment


def load_settings() -> Settings:
    return Settings(
        endpoint=_env("AZURE_OPENAI_ENDPOINT"),
        api_key=_env("AZURE_OPENAI_API_KEY"),
        deployment=_env("DECODER_OPENAI_DEPLOYMENT", "AZURE_OPENAI_DEPLOYMENT"),
        fallback_deployment=_env(
            "DECODER_FALLBACK_DEPLOYMENT", "AZURE_OPENAI_FALLBACK_DEPLOYMENT"
        ),
        api_version=_env("AZURE_OPENAI_API_VERSION", default=DEFAULT_API_VERSION),
        use_max_completion_tokens=_flag("DECODER_MAX_COMPLETION_TOKENS_PARAM"),
        search_endpoint=_env("AZURE_SEARCH_ENDPOINT").rstrip("/"),
        search_index=_env("AZURE_SEARCH_INDEX"),
        search_key=_env("AZURE_SEARCH_KEY"),
        search_api_version=_env("AZURE_SEARCH_API_VERSION", default=DEFAULT_SEARCH_API_VERSION),
        debug_bypass=_flag("DECODER_DEBUG_BYPASS"),
        docintel_endpoint=_env("AZURE_DOCINTEL_ENDPOINT").rstrip("/"),
        docintel_key=_env("AZURE_DOCINTEL_KEY"),
    )


def fallback_deployment_or_none(settings: Settings, primary: str) -> Optional[str]:
    """Secondary deployment, ignored when it names the primary again."""
    fb = settings.fallback_deployment
    if fb and fb != primary:
        return fb
    return None
