"""Provider adapters for text and image generation.

Each adapter speaks one provider's wire format and translates failures into
the taxonomy in :mod:`ipbible.services.errors`. Routing between adapters is by
the explicit provider tag carried on a :class:`~ipbible.services.engines.ModelBinding`;
model names are never inspected to pick a provider.

OpenAI is reached through the official SDK, Gemini through its REST API with
``httpx``. Neither path retries on its own.
"""
from __future__ import annotations

import base64
import binascii
import logging
import threading
from dataclasses import dataclass
from math import gcd
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import httpx
import openai

from .engines import PROVIDER_GEMINI, PROVIDER_OPENAI
from .errors import (
    AuthMissing,
    ConfigurationError,
    GenerationCancelled,
    MalformedResponse,
    NoImageData,
    ProviderRejected,
    ProviderTimeout,
    TransportError,
)

LOGGER = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_IMAGE_SIZE = "1024x1024"

VALID_ROLES = ("system", "user", "assistant")


# ---------------- value types ----------------
@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["ChatMessage"]:
        """Build a message from a stored/posted mapping; ``None`` if unusable."""

        if isinstance(payload, ChatMessage):
            return payload
        if not isinstance(payload, Mapping):
            return None
        role = payload.get("role")
        content = payload.get("content")
        if not isinstance(role, str) or not role.strip():
            return None
        if not isinstance(content, str) or not content:
            return None
        return cls(role=role.strip(), content=content)

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"

    @property
    def extension(self) -> str:
        subtype = self.mime_type.split("/", 1)[-1].lower()
        return {"jpeg": "jpg", "svg+xml": "svg"}.get(subtype, subtype or "png")


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a provider call."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled("Generation request was cancelled.")


@dataclass(frozen=True)
class CallOptions:
    timeout: Optional[float] = None
    cancel_token: Optional[CancellationToken] = None

    def effective_timeout(self, default: float) -> float:
        return float(self.timeout) if self.timeout else float(default)

    def check(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()


@dataclass(frozen=True)
class ProviderCredentials:
    openai_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ProviderCredentials":
        return cls(
            openai_api_key=_clean_secret(config.get("OPENAI_API_KEY")),
            gemini_api_key=_clean_secret(config.get("GEMINI_API_KEY")),
        )


def _clean_secret(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _shorten_debug(text: str, limit: int = 600) -> str:
    text = (text or "").replace("\n", " ")
    return (text[:limit] + "…") if len(text) > limit else text


def size_to_aspect_ratio(size: str) -> str:
    """Translate a ``WIDTHxHEIGHT`` size into the ``W:H`` ratio Gemini expects."""

    try:
        width_text, height_text = size.lower().split("x", 1)
        width, height = int(width_text), int(height_text)
    except (AttributeError, ValueError):
        return "1:1"
    if width <= 0 or height <= 0:
        return "1:1"
    divisor = gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


# ---------------- OpenAI ----------------
def _default_openai_factory(api_key: str, timeout: float) -> Any:
    return openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)


class _OpenAIAdapterBase:
    provider = PROVIDER_OPENAI

    def __init__(
        self,
        api_key: Optional[str],
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client_factory: Optional[Callable[[str, float], Any]] = None,
    ) -> None:
        self.api_key = _clean_secret(api_key)
        self.timeout = float(timeout)
        self._client_factory = client_factory or _default_openai_factory
        self._client: Any = None

    def _get_client(self) -> Any:
        if not self.api_key:
            raise AuthMissing(self.provider, "OPENAI_API_KEY")
        if self._client is None:
            self._client = self._client_factory(self.api_key, self.timeout)
        return self._client

    def close(self) -> None:
        client, self._client = self._client, None
        if client is not None and hasattr(client, "close"):
            client.close()

    def _invoke(self, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except openai.APITimeoutError as exc:
            raise ProviderTimeout(f"OpenAI request timed out: {exc}") from exc
        except openai.APIStatusError as exc:
            detail = _shorten_debug(str(getattr(exc, "message", "") or exc))
            LOGGER.error("OpenAI rejected request with status %s: %s", exc.status_code, detail)
            raise ProviderRejected(self.provider, int(exc.status_code), detail) from exc
        except openai.APIConnectionError as exc:
            raise TransportError(f"Could not reach OpenAI: {exc}") from exc


class OpenAITextAdapter(_OpenAIAdapterBase):
    def send(self, model: str, messages: Sequence[ChatMessage], options: Optional[CallOptions] = None) -> str:
        options = options or CallOptions()
        client = self._get_client()
        options.check()
        payload = [message.to_dict() for message in messages]
        resp = self._invoke(
            lambda: client.chat.completions.create(
                model=model,
                messages=payload,
                timeout=options.effective_timeout(self.timeout),
            )
        )
        options.check()
        text = self._extract_text_from_chat(resp)
        if not text.strip():
            LOGGER.error("OpenAI chat completion returned no text: %s", _shorten_debug(str(resp)))
            raise MalformedResponse("OpenAI returned an empty chat reply.")
        return text

    @staticmethod
    def _extract_text_from_chat(resp: Any) -> str:
        choices = getattr(resp, "choices", None) or []
        if not choices:
            return ""
        first = choices[0]
        msg = getattr(first, "message", None)
        if isinstance(msg, dict):
            content = msg.get("content")
        else:
            content = getattr(msg, "content", None)
        if isinstance(content, list):
            parts: List[str] = []
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    parts.append(str(part.get("text") or ""))
            return "\n".join(p for p in parts if p)
        if isinstance(content, str):
            return content
        return ""


class OpenAIImageAdapter(_OpenAIAdapterBase):
    def generate(
        self,
        model: str,
        prompt: str,
        size: str = DEFAULT_IMAGE_SIZE,
        options: Optional[CallOptions] = None,
    ) -> GeneratedImage:
        options = options or CallOptions()
        client = self._get_client()
        options.check()
        # gpt-image models reject ``response_format``; they always return base64.
        resp = self._invoke(
            lambda: client.images.generate(
                model=model,
                prompt=prompt,
                n=1,
                size=size,
                timeout=options.effective_timeout(self.timeout),
            )
        )
        options.check()

        data = getattr(resp, "data", None) or []
        first = data[0] if data else None
        encoded = first.get("b64_json") if isinstance(first, dict) else getattr(first, "b64_json", None)
        if not encoded:
            raise NoImageData("OpenAI image response did not include image data.")
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise NoImageData("OpenAI image data could not be decoded.") from exc
        if not raw:
            raise NoImageData("OpenAI image data was empty.")
        return GeneratedImage(data=raw, mime_type="image/png")


# ---------------- Gemini ----------------
class _GeminiAdapterBase:
    provider = PROVIDER_GEMINI

    def __init__(
        self,
        api_key: Optional[str],
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        base_url: str = GEMINI_BASE_URL,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = _clean_secret(api_key)
        self.timeout = float(timeout)
        self.base_url = base_url.rstrip("/")
        self._client = client

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    def _generate_content(self, model: str, body: Dict[str, Any], options: CallOptions) -> Dict[str, Any]:
        if not self.api_key:
            raise AuthMissing(self.provider, "GEMINI_API_KEY")
        options.check()
        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {"Content-Type": "application/json", "x-goog-api-key": self.api_key}
        try:
            response = self._http().post(
                url,
                json=body,
                headers=headers,
                timeout=options.effective_timeout(self.timeout),
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"Gemini request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Could not reach Gemini: {exc}") from exc
        options.check()

        if response.status_code >= 400:
            detail = _shorten_debug(response.text)
            LOGGER.error("Gemini rejected request with status %s: %s", response.status_code, detail)
            raise ProviderRejected(self.provider, response.status_code, detail)
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponse("Gemini returned a non-JSON response.") from exc
        if not isinstance(payload, dict):
            raise MalformedResponse("Gemini returned an unexpected response shape.")
        return payload

    @staticmethod
    def _first_candidate_parts(payload: Mapping[str, Any]) -> List[Any]:
        candidates = payload.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return []
        content = candidates[0].get("content") or {}
        parts = content.get("parts") if isinstance(content, dict) else None
        return list(parts or [])


class GeminiTextAdapter(_GeminiAdapterBase):
    def send(self, model: str, messages: Sequence[ChatMessage], options: Optional[CallOptions] = None) -> str:
        options = options or CallOptions()
        body = self._build_body(messages)
        payload = self._generate_content(model, body, options)

        texts = [
            part.get("text")
            for part in self._first_candidate_parts(payload)
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        text = "".join(texts)
        if not text.strip():
            LOGGER.error("Gemini returned no text: %s", _shorten_debug(str(payload)))
            raise MalformedResponse("Gemini returned an empty chat reply.")
        return text

    @staticmethod
    def _build_body(messages: Iterable[ChatMessage]) -> Dict[str, Any]:
        system_texts: List[str] = []
        contents: List[Dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                system_texts.append(message.content)
                continue
            role = "model" if message.role == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})

        body: Dict[str, Any] = {"contents": contents}
        if system_texts:
            body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_texts)}]}
        return body


class GeminiImageAdapter(_GeminiAdapterBase):
    def generate(
        self,
        model: str,
        prompt: str,
        size: str = DEFAULT_IMAGE_SIZE,
        options: Optional[CallOptions] = None,
    ) -> GeneratedImage:
        options = options or CallOptions()
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {"aspectRatio": size_to_aspect_ratio(size)},
            },
        }
        payload = self._generate_content(model, body, options)

        for part in self._first_candidate_parts(payload):
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if not isinstance(inline, dict) or not inline.get("data"):
                continue
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            try:
                raw = base64.b64decode(inline["data"], validate=True)
            except (binascii.Error, ValueError) as exc:
                raise NoImageData("Gemini image data could not be decoded.") from exc
            if raw:
                return GeneratedImage(data=raw, mime_type=str(mime_type))
        raise NoImageData("Gemini response did not include image data.")


# ---------------- routing ----------------
def _close_adapters(adapters: Iterable[Any]) -> None:
    for adapter in adapters:
        close = getattr(adapter, "close", None)
        if callable(close):
            close()


class TextGenerationClient:
    """Dispatches chat requests to the adapter registered for a provider tag."""

    def __init__(self, adapters: Mapping[str, Any]) -> None:
        self._adapters = dict(adapters)

    def close(self) -> None:
        _close_adapters(self._adapters.values())

    @classmethod
    def from_credentials(
        cls, credentials: ProviderCredentials, *, timeout: float = DEFAULT_TIMEOUT_SECONDS
    ) -> "TextGenerationClient":
        return cls(
            {
                PROVIDER_OPENAI: OpenAITextAdapter(credentials.openai_api_key, timeout=timeout),
                PROVIDER_GEMINI: GeminiTextAdapter(credentials.gemini_api_key, timeout=timeout),
            }
        )

    def send_chat(
        self,
        provider: str,
        model: str,
        messages: Sequence[ChatMessage],
        options: Optional[CallOptions] = None,
    ) -> str:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ConfigurationError(f"No text adapter registered for provider '{provider}'.")
        LOGGER.debug("Sending %d messages to %s/%s", len(messages), provider, model)
        return adapter.send(model, list(messages), options)


class ImageGenerationClient:
    """Dispatches image requests to the adapter registered for a provider tag."""

    def __init__(self, adapters: Mapping[str, Any]) -> None:
        self._adapters = dict(adapters)

    def close(self) -> None:
        _close_adapters(self._adapters.values())

    @classmethod
    def from_credentials(
        cls, credentials: ProviderCredentials, *, timeout: float = DEFAULT_TIMEOUT_SECONDS
    ) -> "ImageGenerationClient":
        return cls(
            {
                PROVIDER_OPENAI: OpenAIImageAdapter(credentials.openai_api_key, timeout=timeout),
                PROVIDER_GEMINI: GeminiImageAdapter(credentials.gemini_api_key, timeout=timeout),
            }
        )

    def generate_image(
        self,
        provider: str,
        model: str,
        prompt: str,
        size: str = DEFAULT_IMAGE_SIZE,
        options: Optional[CallOptions] = None,
    ) -> GeneratedImage:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ConfigurationError(f"No image adapter registered for provider '{provider}'.")
        LOGGER.debug("Requesting %s image from %s/%s", size, provider, model)
        return adapter.generate(model, prompt, size, options)


__all__ = [
    "CallOptions",
    "CancellationToken",
    "ChatMessage",
    "GeminiImageAdapter",
    "GeminiTextAdapter",
    "GeneratedImage",
    "ImageGenerationClient",
    "OpenAIImageAdapter",
    "OpenAITextAdapter",
    "ProviderCredentials",
    "TextGenerationClient",
    "VALID_ROLES",
    "size_to_aspect_ratio",
]
