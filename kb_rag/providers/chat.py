"""Chat provider implementations and factory.

Provides:
- OpenAIChatProvider: OpenAI chat completions; also serves deepseek and custom
  OpenAI-compatible endpoints through base_url
- AnthropicChatProvider: Anthropic messages API (messages.create / messages.stream)
- GeminiChatProvider: google.generativeai GenerativeModel.generate_content
- build_chat_provider: picks the implementation for a ProviderSettings snapshot

Every stream() is a generator; closing it early closes the upstream stream so a
disconnected caller does not keep draining a slow provider.
"""
import logging
from typing import Iterator, Optional

import anthropic
import openai
from openai import OpenAI

from kb_rag.config import settings
from kb_rag.providers.base import DEFAULT_CHAT_BASE_URLS, BackendKind, ChatProvider, ProviderSettings
from kb_rag.providers.transport import translate_google_error, translate_sdk_error

logger = logging.getLogger(__name__)


def _cap_tokens(config: ProviderSettings, max_tokens: int) -> int:
    cap = config.max_output_tokens
    return min(max_tokens, cap) if cap else max_tokens


class OpenAIChatProvider(ChatProvider):
    """Chat completions through the OpenAI SDK."""

    supports_streaming = True

    def __init__(self, config: ProviderSettings, client: Optional[OpenAI] = None):
        self.name = f"{config.kind.value}-chat"
        self.model = config.effective_chat_model
        self._config = config
        self._client = client or OpenAI(
            api_key=config.api_key or "not-set",
            base_url=config.base_url or DEFAULT_CHAT_BASE_URLS.get(config.kind),
            timeout=settings.CHAT_TIMEOUT_SECONDS,
            max_retries=1,
        )

    def complete(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 2000) -> str:
        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=_cap_tokens(self._config, max_tokens),
            )
        except openai.APIError as e:
            raise translate_sdk_error(e, self.name, "completion") from e
        content = resp.choices[0].message.content if resp.choices else ""
        return (content or "").strip()

    def stream(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 2000) -> Iterator[str]:
        try:
            upstream = self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=_cap_tokens(self._config, max_tokens),
                stream=True,
            )
        except openai.APIError as e:
            raise translate_sdk_error(e, self.name, "stream") from e
        try:
            for event in upstream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    yield delta
        except openai.APIError as e:
            raise translate_sdk_error(e, self.name, "stream") from e
        finally:
            upstream.close()


class AnthropicChatProvider(ChatProvider):
    """Anthropic messages API."""

    supports_streaming = True

    def __init__(self, config: ProviderSettings, client: Optional[anthropic.Anthropic] = None):
        self.name = "anthropic-chat"
        self.model = config.effective_chat_model
        self._config = config
        kwargs = {"api_key": config.api_key, "timeout": settings.CHAT_TIMEOUT_SECONDS, "max_retries": 1}
        if config.base_url:
            kwargs["base_url"] = config.base_url
        self._client = client or anthropic.Anthropic(**kwargs)

    def complete(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 2000) -> str:
        try:
            resp = self._client.messages.create(
                model=self.model,
                max_tokens=_cap_tokens(self._config, max_tokens),
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise translate_sdk_error(e, self.name, "completion") from e
        parts = [block.text for block in resp.content if getattr(block, "type", "") == "text"]
        return "".join(parts).strip()

    def stream(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 2000) -> Iterator[str]:
        try:
            with self._client.messages.stream(
                model=self.model,
                max_tokens=_cap_tokens(self._config, max_tokens),
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
            ) as upstream:
                for text in upstream.text_stream:
                    if text:
                        yield text
        except anthropic.APIError as e:
            raise translate_sdk_error(e, self.name, "stream") from e


class GeminiChatProvider(ChatProvider):
    """Google Generative AI chat via GenerativeModel."""

    supports_streaming = True

    def __init__(self, config: ProviderSettings, model=None):
        import google.generativeai as genai

        self.name = "gemini-chat"
        self.model_name = config.effective_chat_model
        self._config = config
        self._genai = genai
        if model is None:
            genai.configure(api_key=config.api_key)
            model = genai.GenerativeModel(self.model_name)
        self._model = model

    def _generation_config(self, temperature: float, max_tokens: int) -> dict:
        return {"temperature": temperature, "max_output_tokens": _cap_tokens(self._config, max_tokens)}

    def complete(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 2000) -> str:
        from google.api_core import exceptions as gexc

        try:
            resp = self._model.generate_content(
                prompt,
                generation_config=self._generation_config(temperature, max_tokens),
                request_options={"timeout": settings.CHAT_TIMEOUT_SECONDS},
            )
        except gexc.GoogleAPIError as e:
            raise translate_google_error(e, self.name, "completion") from e
        try:
            return (resp.text or "").strip()
        except ValueError:
            # .text raises when the candidate was blocked or is empty
            logger.warning("%s returned no text candidate", self.name)
            return ""

    def stream(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 2000) -> Iterator[str]:
        from google.api_core import exceptions as gexc

        try:
            upstream = self._model.generate_content(
                prompt,
                generation_config=self._generation_config(temperature, max_tokens),
                request_options={"timeout": settings.CHAT_TIMEOUT_SECONDS},
                stream=True,
            )
            for part in upstream:
                try:
                    text = part.text
                except ValueError:
                    continue
                if text:
                    yield text
        except gexc.GoogleAPIError as e:
            raise translate_google_error(e, self.name, "stream") from e


def build_chat_provider(config: ProviderSettings) -> ChatProvider:
    """Construct the chat provider for a provider configuration.

    Args:
        config: Active provider snapshot.

    Returns:
        ChatProvider: Backend-specific implementation.
    """
    if config.kind == BackendKind.ANTHROPIC:
        return AnthropicChatProvider(config)
    if config.kind == BackendKind.GEMINI:
        return GeminiChatProvider(config)
    return OpenAIChatProvider(config)
