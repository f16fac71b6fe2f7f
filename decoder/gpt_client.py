"""
Shared Azure OpenAI chat helper for the decoder pipeline.

Used by every stage that talks to the model (parse, generate, replace,
synth, pitfalls, finalize) and by the hint / augment endpoints.

Unlike a plain ``call_gpt`` returning text, stages here need the finish
reason (token-cap detection) and the reported usage (budget accounting),
so ``complete`` returns a ChatResult.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from openai import APIConnectionError, APIStatusError, AsyncAzureOpenAI

from decoder.config import Settings, fallback_deployment_or_none
from decoder.errors import ProviderError, ProviderTimeout
from decoder.schemas import ImageInput

log = logging.getLogger("decoder.pipeline")


# ── Message builders ──────────────────────────────────────────────────────────

def text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def image_part(image: ImageInput) -> Dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{image.mime_type};base64,{image.data}"},
    }


def user_message(texts: Iterable[str], images: Iterable[ImageInput] = ()) -> Dict[str, Any]:
    parts = [text_part(t) for t in texts if t]
    parts.extend(image_part(img) for img in images)
    return {"role": "user", "content": parts}


def system_message(text: str) -> Dict[str, Any]:
    return {"role": "system", "content": text}


# ── Result ────────────────────────────────────────────────────────────────────

@dataclass
class ChatResult:
    content: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    deployment: str = ""

    @property
    def hit_cap(self) -> bool:
        """The model stopped because it ran out of completion tokens."""
        return self.finish_reason == "length"

    @property
    def empty(self) -> bool:
        return not (self.content or "").strip()


def _coerce_content(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        chunks = []
        for item in value:
            text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
            if isinstance(text, str):
                chunks.append(text)
        return "\n".join(chunks)
    return str(value)


def _error_details(exc: APIStatusError) -> str:
    try:
        return exc.response.text[:400]
    except Exception:
        return str(exc)[:400]


# ── Client ────────────────────────────────────────────────────────────────────

class AzureChatClient:
    """Thin async wrapper over AsyncAzureOpenAI chat completions."""

    def __init__(self, settings: Settings):
        endpoint, primary = settings.resolve_provider()
        self.primary_deployment = primary
        self.fallback_deployment = fallback_deployment_or_none(settings, primary)
        self._use_max_completion_tokens = settings.use_max_completion_tokens
        self._client = AsyncAzureOpenAI(
            azure_endpoint=endpoint,
            api_key=settings.api_key,
            api_version=settings.api_version,
            max_retries=0,
        )

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        deployment: Optional[str] = None,
        response_format: Optional[str] = "json_object",
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        timeout: float = 10.0,
    ) -> ChatResult:
        """
        One chat completion call, cancelled after ``timeout`` seconds.

        Raises:
            ProviderTimeout: the call was cancelled
            ProviderError:   non-2xx status (propagated) or connection failure
        """
        model = deployment or self.primary_deployment
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if response_format:
            kwargs["response_format"] = {"type": response_format}
        if max_tokens:
            key = "max_completion_tokens" if self._use_max_completion_tokens else "max_tokens"
            kwargs[key] = int(max_tokens)

        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**kwargs), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(f"Azure call timed out after {timeout:.1f}s") from e
        except APIStatusError as e:
            raise ProviderError(
                "Azure error", status_code=e.status_code, details=_error_details(e)
            ) from e
        except APIConnectionError as e:
            raise ProviderError("Azure unreachable", details=str(e)[:400]) from e

        choice = response.choices[0] if response.choices else None
        usage = response.usage.model_dump() if response.usage is not None else None
        return ChatResult(
            content=_coerce_content(choice.message.content) if choice else "",
            finish_reason=choice.finish_reason if choice else None,
            usage=usage,
            deployment=model,
        )


# Lazy singleton, rebuilt when the settings change
_client: Optional[AzureChatClient] = None
_client_settings: Optional[Settings] = None


def get_chat_client(settings: Settings) -> AzureChatClient:
    global _client, _client_settings
    if _client is None or _client_settings != settings:
        _client = AzureChatClient(settings)
        _client_settings = settings
    return _client
