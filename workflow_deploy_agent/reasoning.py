"""Text-completion collaborator — model-agnostic LLM interface.

The orchestrator treats the LLM as an opaque function
(system, history, max_tokens, temperature, timeout) -> (text, tokens_used)
with bounded latency. Provider SDK calls carry the provider's own timeout;
complete_with_timeout() wraps them in an independent asyncio deadline so a
hung provider can never stall a session.

Providers are optional extras:
    pip install 'workflow-deploy-agent[claude]'
    pip install 'workflow-deploy-agent[openai]'
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_deploy_agent.errors import CompletionError, CompletionRateLimited, CompletionTimeout

logger = logging.getLogger("workflow_deploy_agent.reasoning")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single conversation message. role is "user" or "assistant"."""

    role: str
    content: str


@dataclass
class Completion:
    text: str
    tokens_used: int = 0


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class CompletionEngine(ABC):
    """Abstract base class for any LLM provider."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.2,
        timeout: float = 20.0,
    ) -> Completion:
        """Send a conversation to the LLM and return its text reply.

        Raises:
            CompletionTimeout:     the provider timed out.
            CompletionRateLimited: the provider refused with a rate limit.
            CompletionError:       any other provider failure.
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Human-readable provider/model string for logging, e.g. 'openai/gpt-4o'."""
        ...


async def complete_with_timeout(
    engine: CompletionEngine,
    messages: list[Message],
    *,
    system: str | None,
    timeout: float,
    max_tokens: int = 1024,
    temperature: float = 0.2,
) -> Completion:
    """Call engine.complete() under a wrapping deadline independent of the provider's."""
    try:
        return await asyncio.wait_for(
            engine.complete(
                messages,
                system=system,
                max_tokens=max_tokens,
                temperature=temperature,
                timeout=timeout,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        logger.warning("%s: completion exceeded %.1fs", engine.model_id, timeout)
        raise CompletionTimeout(f"text completion exceeded {timeout:.1f}s") from e


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(CompletionEngine):
    """Completion engine backed by Anthropic's Claude API."""

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-6") -> None:
        try:
            import anthropic as _anthropic
            self._anthropic = _anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for ClaudeEngine. "
                "Install it with: pip install 'workflow-deploy-agent[claude]'"
            )
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY is required for ClaudeEngine. "
                "Set it in your environment or .env file."
            )
        self._client = self._anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        logger.info("ClaudeEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"anthropic/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.2,
        timeout: float = 20.0,
    ) -> Completion:
        kwargs = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "timeout": timeout,
        }
        if system:
            kwargs["system"] = system
        try:
            response = await self._client.messages.create(**kwargs)
        except self._anthropic.APITimeoutError as e:
            raise CompletionTimeout(str(e)) from e
        except self._anthropic.RateLimitError as e:
            raise CompletionRateLimited(str(e)) from e
        except self._anthropic.APIError as e:
            raise CompletionError(str(e)) from e

        text = "".join(b.text for b in response.content if b.type == "text")
        usage = response.usage
        return Completion(text=text, tokens_used=usage.input_tokens + usage.output_tokens)


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------


class OpenAIEngine(CompletionEngine):
    """Completion engine backed by the OpenAI API."""

    def __init__(self, api_key: str, model: str = "gpt-4o") -> None:
        try:
            import openai as _openai
            self._openai = _openai
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for OpenAIEngine. "
                "Install it with: pip install 'workflow-deploy-agent[openai]'"
            )
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY is required for OpenAIEngine. "
                "Set it in your environment or .env file."
            )
        self._client = self._openai.AsyncOpenAI(api_key=api_key)
        self._model = model
        logger.info("OpenAIEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"openai/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.2,
        timeout: float = 20.0,
    ) -> Completion:
        oai_messages = [{"role": "system", "content": system}] if system else []
        oai_messages += [{"role": m.role, "content": m.content} for m in messages]
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=oai_messages,
                max_tokens=max_tokens,
                temperature=temperature,
                timeout=timeout,
            )
        except self._openai.APITimeoutError as e:
            raise CompletionTimeout(str(e)) from e
        except self._openai.RateLimitError as e:
            raise CompletionRateLimited(str(e)) from e
        except self._openai.APIError as e:
            raise CompletionError(str(e)) from e

        text = response.choices[0].message.content or ""
        tokens = response.usage.total_tokens if response.usage else 0
        return Completion(text=text, tokens_used=tokens)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the text-completion collaborator.

    Environment variables:
      REASONING_ENGINE      — "claude" | "openai" | "none" (default: "none",
                              which selects the deterministic keyword extractor)
      REASONING_MODEL       — model override; unset for the provider default
      ANTHROPIC_API_KEY     — required when provider is "claude"
      OPENAI_API_KEY        — required when provider is "openai"
      REASONING_TEMPERATURE — sampling temperature 0.0–1.0 (default: 0.0)
      REASONING_MAX_TOKENS  — completion cap (default: 1024)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    provider: str = Field(default="none", validation_alias="REASONING_ENGINE")
    model: str | None = Field(default=None, validation_alias="REASONING_MODEL")
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ANTHROPIC_API_KEY",
        repr=False,
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENAI_API_KEY",
        repr=False,
    )
    temperature: float = Field(default=0.0, validation_alias="REASONING_TEMPERATURE")
    max_tokens: int = Field(default=1024, ge=1, validation_alias="REASONING_MAX_TOKENS")

    @field_validator("provider", mode="before")
    @classmethod
    def lowercase_provider(cls, v: object) -> str:
        return str(v).lower() if v else "none"

    @field_validator("model", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> str | None:
        if not v:
            return None
        return str(v)

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @classmethod
    def from_env(cls) -> ReasoningSettings:
        return cls()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_engine(settings: ReasoningSettings) -> CompletionEngine | None:
    """Instantiate the configured engine, or None for provider "none"."""
    match settings.provider:
        case "claude" | "anthropic":
            return ClaudeEngine(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.model or "claude-sonnet-4-6",
            )
        case "openai" | "gpt":
            return OpenAIEngine(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.model or "gpt-4o",
            )
        case "none" | "keyword":
            return None
        case _:
            raise ValueError(
                f"Unknown reasoning engine provider: {settings.provider!r}. "
                f"Valid options: 'claude', 'openai', 'none'"
            )
