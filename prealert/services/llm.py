import logging
import re
from typing import TypeVar

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from prealert.config import Settings
from prealert.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_ANTHROPIC_DEFAULT_MODEL = "claude-3-5-haiku-latest"
_OPENAI_DEFAULT_MODEL = "gpt-4o-mini"
# Groq serves an OpenAI-compatible API under its own model names
_GROQ_DEFAULT_MODEL = "llama-3.3-70b-versatile"


def _strip_json(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        return text[start:end + 1]
    return text


class LLMClient:
    def __init__(
        self,
        settings: Settings,
        anthropic_client: AsyncAnthropic | None = None,
        openai_client: AsyncOpenAI | None = None,
    ) -> None:
        provider = (settings.llm_provider or "auto").lower()
        if provider == "auto":
            if settings.anthropic_api_key or anthropic_client is not None:
                provider = "anthropic"
            elif settings.openai_api_key or openai_client is not None:
                provider = "openai"
            else:
                provider = "dummy"
        self.provider = provider
        self._model = settings.llm_model
        self._base_url = settings.llm_base_url

        self._anthropic = anthropic_client
        if self._anthropic is None and settings.anthropic_api_key:
            self._anthropic = AsyncAnthropic(api_key=settings.anthropic_api_key)
        self._openai = openai_client
        if self._openai is None and settings.openai_api_key:
            self._openai = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.llm_base_url or None,
            )

    def available(self) -> bool:
        if self.provider == "anthropic":
            return self._anthropic is not None
        if self.provider == "openai":
            return self._openai is not None
        return False

    def model(self) -> str:
        if self._model:
            return self._model
        if self.provider == "anthropic":
            return _ANTHROPIC_DEFAULT_MODEL
        if "groq" in (self._base_url or ""):
            return _GROQ_DEFAULT_MODEL
        return _OPENAI_DEFAULT_MODEL

    async def _complete(self, system: str, user: str, max_tokens: int, temperature: float) -> str:
        if self.provider == "anthropic":
            message = await self._anthropic.messages.create(
                model=self.model(),
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            raw = ""
            for block in message.content:
                if hasattr(block, "text"):
                    raw += block.text
            return raw

        response = await self._openai.chat.completions.create(
            model=self.model(),
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""

    async def generate_json(
        self,
        *,
        system: str,
        user: str,
        response_model: type[T],
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> T:
        """Ask for a JSON object and validate it. Raises UpstreamUnavailable on any failure."""
        if not self.available():
            raise UpstreamUnavailable("LLM provider not configured")

        try:
            raw = await self._complete(system, user, max_tokens, temperature)
        except Exception as exc:
            raise UpstreamUnavailable(f"LLM request failed: {exc}") from exc

        raw = _strip_json(raw)
        try:
            return response_model.model_validate_json(raw)
        except ValidationError as exc:
            raise UpstreamUnavailable(f"LLM reply did not match schema: {exc}") from exc
