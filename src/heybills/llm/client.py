"""Generation capability adapters for the chat assistant."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Sequence

import httpx

from heybills.config import Settings
from heybills.errors import GenerationFailed, GenerationTimeout

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class TextGenerator(Protocol):
    def generate(self, messages: Sequence[Message], *, timeout: float) -> str:
        ...


class OpenAICompatibleGenerator:
    """Call an OpenAI/OpenRouter ``chat/completions`` or Ollama ``api/chat`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        provider: str = "openai",
        api_key: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._provider = (provider or "openai").strip().lower()
        self._api_key = api_key
        self._temperature = max(0.0, float(temperature))
        self._max_tokens = max(1, int(max_tokens))

    def generate(self, messages: Sequence[Message], *, timeout: float) -> str:
        try:
            if self._provider == "ollama":
                return self._ollama(list(messages), timeout)
            return self._chat_completions(list(messages), timeout)
        except httpx.TimeoutException as exc:
            raise GenerationTimeout(f"LLM request exceeded {timeout}s") from exc
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.warning("LLM request failed: %s", exc)
            raise GenerationFailed(f"LLM request failed: {exc}") from exc

    def _ollama(self, messages: List[Message], timeout: float) -> str:
        endpoint = self._base_url
        if not endpoint.endswith("/api/chat"):
            endpoint = f"{endpoint}/api/chat"
        payload = {
            "model": self._model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": self._temperature, "num_predict": self._max_tokens},
        }
        with httpx.Client(timeout=timeout) as client:
            response = client.post(endpoint, json=payload)
        response.raise_for_status()
        content = ((response.json().get("message") or {}).get("content") or "").strip()
        if not content:
            raise ValueError("Ollama response did not include content.")
        return content

    def _chat_completions(self, messages: List[Message], timeout: float) -> str:
        endpoint = self._base_url
        if not endpoint.endswith("/chat/completions"):
            endpoint = f"{endpoint}/chat/completions"
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        payload = {
            "model": self._model,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "messages": messages,
        }
        with httpx.Client(timeout=timeout) as client:
            response = client.post(endpoint, json=payload, headers=headers)
        response.raise_for_status()
        choices = response.json().get("choices") or []
        if not choices:
            raise ValueError("LLM returned no choices.")
        content = ((choices[0].get("message") or {}).get("content") or "").strip()
        if not content:
            raise ValueError("LLM returned an empty response.")
        return content


class ContextEchoGenerator:
    """Offline generator that answers by listing the retrieved receipt context."""

    def generate(self, messages: Sequence[Message], *, timeout: float) -> str:
        question = messages[-1]["content"] if messages else ""
        context = [message["content"] for message in messages[1:-1] if message["role"] == "system"]
        if not context:
            return (
                f'I couldn\'t find any receipts related to "{question}". '
                "Try asking about a merchant, a date or an amount."
            )
        return "Here is what I found in your receipts:\n\n" + "\n\n".join(context)


def build_generator(settings: Settings) -> TextGenerator:
    if not settings.llm_base_url:
        logger.info("No LLM endpoint configured; chat replies will list retrieved receipts")
        return ContextEchoGenerator()
    return OpenAICompatibleGenerator(
        base_url=settings.llm_base_url,
        model=settings.llm_model,
        provider=settings.llm_provider,
        api_key=settings.llm_api_key,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
    )


__all__ = [
    "ContextEchoGenerator",
    "Message",
    "OpenAICompatibleGenerator",
    "TextGenerator",
    "build_generator",
]
