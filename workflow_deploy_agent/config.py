"""Orchestrator configuration and the deployment retry policy.

OrchestratorSettings is read once at the process edge (API lifespan or CLI)
and injected into each component at construction; nothing below reads the
environment afterwards.

Environment variables:
  SLOT_PROJECTS         — number of engine projects in the slot pool (default: 10)
  SLOTS_PER_PROJECT     — folders per project (default: 5)
  DEPLOY_MAX_ATTEMPTS   — submissions per definition, heals included (default: 3)
  DEPLOY_BACKOFF_BASE   — first retry delay in seconds (default: 1.0)
  DEPLOY_BACKOFF_MAX    — backoff cap in seconds (default: 8.0)
  SESSION_DEADLINE      — seconds a single deploy may take end to end (default: 120)
  COMPLETION_TIMEOUT    — wrapping timeout for the text-completion call (default: 20)
  STORE_URL             — memory:// | sqlite:///path.db | postgresql://... (default: memory://)
  SUPPORTED_TRIGGERS    — comma-separated engine trigger capabilities
  SUPPORTED_ACTIONS     — comma-separated engine action capabilities
  AGENT_API_KEY         — bearer key required by the HTTP API; unset for open dev mode
  RATE_LIMIT_SESSIONS_PER_MIN — session creations per client per minute (default: 10)
  POSTGRES_POOL_MIN     — Postgres pool lower bound (default: 2)
  POSTGRES_POOL_MAX     — Postgres pool upper bound (default: 10)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_deploy_agent.models import ErrorClass

HEALABLE: frozenset[ErrorClass] = frozenset({
    ErrorClass.SCHEMA_VIOLATION,
    ErrorClass.READ_ONLY_FIELD_REJECTED,
    ErrorClass.INVALID_CONNECTION,
})

RETRY_WITHOUT_HEAL: frozenset[ErrorClass] = frozenset({
    ErrorClass.TIMEOUT,
    ErrorClass.RATE_LIMITED,
})


class RetryAction(str, enum.Enum):
    HEAL = "heal"
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for DeploymentCoordinator, expressed as data.

    max_attempts: hard bound on submissions per definition (heals count).
    backoff(n):   delay before submission n+1 after a retry-without-heal
                  failure on submission n: base * multiplier**(n-1), capped.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    multiplier: float = 2.0
    healable: frozenset[ErrorClass] = HEALABLE
    retryable: frozenset[ErrorClass] = RETRY_WITHOUT_HEAL

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.healable & self.retryable:
            raise ValueError("an error class cannot be both healable and retry-only")

    def backoff(self, attempt_number: int) -> float:
        return min(self.base_delay * self.multiplier ** (attempt_number - 1), self.max_delay)

    def action_for(self, error_class: ErrorClass) -> RetryAction:
        if error_class in self.healable:
            return RetryAction.HEAL
        if error_class in self.retryable:
            return RetryAction.RETRY
        return RetryAction.FAIL


def _split_csv(value: str) -> frozenset[str]:
    return frozenset(v.strip().lower() for v in value.split(",") if v.strip())


class OrchestratorSettings(BaseSettings):
    """Immutable settings for the slot pool, deployment and conversation layers."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    slot_projects: int = Field(default=10, ge=1, validation_alias="SLOT_PROJECTS")
    slots_per_project: int = Field(default=5, ge=1, validation_alias="SLOTS_PER_PROJECT")
    max_attempts: int = Field(default=3, ge=1, validation_alias="DEPLOY_MAX_ATTEMPTS")
    backoff_base: float = Field(default=1.0, ge=0.0, validation_alias="DEPLOY_BACKOFF_BASE")
    backoff_max: float = Field(default=8.0, ge=0.0, validation_alias="DEPLOY_BACKOFF_MAX")
    session_deadline: float = Field(default=120.0, gt=0, validation_alias="SESSION_DEADLINE")
    completion_timeout: float = Field(default=20.0, gt=0, validation_alias="COMPLETION_TIMEOUT")
    store_url: str = Field(default="memory://", validation_alias="STORE_URL")
    supported_triggers: str = Field(
        default="webhook,schedule,manual", validation_alias="SUPPORTED_TRIGGERS"
    )
    supported_actions: str = Field(
        default="http_request,send_email,slack_message,transform",
        validation_alias="SUPPORTED_ACTIONS",
    )
    agent_api_key: str = Field(default="", repr=False, validation_alias="AGENT_API_KEY")
    rate_limit_sessions_per_min: int = Field(
        default=10, ge=1, validation_alias="RATE_LIMIT_SESSIONS_PER_MIN"
    )
    postgres_pool_min: int = Field(default=2, ge=1, validation_alias="POSTGRES_POOL_MIN")
    postgres_pool_max: int = Field(default=10, ge=1, validation_alias="POSTGRES_POOL_MAX")

    @field_validator("store_url", mode="before")
    @classmethod
    def default_store(cls, v: object) -> str:
        return str(v).strip() if v else "memory://"

    @property
    def pool_size(self) -> int:
        return self.slot_projects * self.slots_per_project

    @property
    def trigger_capabilities(self) -> frozenset[str]:
        return _split_csv(self.supported_triggers)

    @property
    def action_capabilities(self) -> frozenset[str]:
        return _split_csv(self.supported_actions)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
        )

    @classmethod
    def from_env(cls) -> OrchestratorSettings:
        return cls()
