"""Provider SDK client factory.

Both extraction providers resolve their key and base URL the same way: explicit
argument first, then the provider's own environment variable.
"""

import os
from typing import Any, Dict, Optional, Tuple

import anthropic
from loguru import logger
from openai import OpenAI

# provider -> (API key env var, base URL env var)
PROVIDER_ENV: Dict[str, Tuple[str, str]] = {
    "openai": ("OPENAI_API_KEY", "OPENAI_BASE_URL"),
    "anthropic": ("ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL"),
}


def _mask(api_key: Optional[str]) -> str:
    return f"{api_key[:4]}...{api_key[-4:]}" if api_key and len(api_key) > 8 else "None"


def create_provider_client(
    provider: str,
    *,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    max_retries: int = 0,
) -> Any:
    """Create an OpenAI or Anthropic SDK client.

    Unset options are left out so the SDK applies its own defaults. SDK retries
    default to zero because ``ExtractionClient`` runs its own backoff loop and
    bills every attempt.

    Raises:
        ValueError: If the provider is not supported
    """
    if provider not in PROVIDER_ENV:
        raise ValueError(f"Unsupported LLM provider: {provider}")

    key_var, url_var = PROVIDER_ENV[provider]
    resolved_key = api_key or os.getenv(key_var)
    resolved_url = base_url or os.getenv(url_var)

    kwargs: Dict[str, Any] = {"max_retries": max_retries}
    if resolved_key:
        kwargs["api_key"] = resolved_key
    if resolved_url:
        kwargs["base_url"] = resolved_url
    if timeout is not None:
        kwargs["timeout"] = timeout

    logger.debug(
        f"Creating {provider} client: base_url={resolved_url}, "
        f"api_key={_mask(resolved_key)}, timeout={timeout}"
    )

    if provider == "openai":
        return OpenAI(**kwargs)
    return anthropic.Anthropic(**kwargs)
