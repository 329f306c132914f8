"""Requirement fact extraction: natural language → validated key/value facts.

Two extractors share one output contract (an Extraction of validated facts):

  KeywordFactExtractor — deterministic regex rules; no network I/O.
  LLMFactExtractor     — asks the text-completion collaborator for a JSON
                         object, then validates it exactly like keyword output.

Extractor output is never trusted: every fact passes through RequirementFacts
(a strict pydantic model) before it reaches a session's draft requirements.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import pydantic
from pydantic import BaseModel, ConfigDict, field_validator

from workflow_deploy_agent.agent.roles import AgentRole, system_prompt_for
from workflow_deploy_agent.errors import ValidationError
from workflow_deploy_agent.models import Turn
from workflow_deploy_agent.reasoning import CompletionEngine, Message, complete_with_timeout

logger = logging.getLogger("workflow_deploy_agent.agent.facts")

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_PATH_RE = re.compile(r"^[a-z0-9][a-z0-9/_\-]*$")

_TRIGGER_SYNONYMS = {
    "cron": "schedule",
    "scheduled": "schedule",
    "timer": "schedule",
    "http": "webhook",
    "http_request": "webhook",
    "on_demand": "manual",
}


# ---------------------------------------------------------------------------
# Validated fact schema
# ---------------------------------------------------------------------------


def _slug(value: str) -> str:
    return re.sub(r"[\s\-]+", "_", value.strip().lower())


# (low, high) per field: minute, hour, day of month, month, day of week
_CRON_RANGES = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))
_CRON_ITEM_RE = re.compile(r"^(\*|\d+(?:-\d+)?)(?:/(\d+))?$")


def _valid_cron_field(value: str, low: int, high: int) -> bool:
    for item in value.split(","):
        m = _CRON_ITEM_RE.match(item)
        if not m:
            return False
        base, step = m.groups()
        if step is not None and not 1 <= int(step) <= high:
            return False
        if base == "*":
            continue
        start, _, end = base.partition("-")
        first = int(start)
        last = int(end) if end else first
        if not low <= first <= last <= high:
            return False
    return True


def is_valid_cron(expr: str) -> bool:
    """True for a 5-field cron expression whose values are all in range."""
    parts = expr.split()
    return len(parts) == 5 and all(
        _valid_cron_field(part, low, high) for part, (low, high) in zip(parts, _CRON_RANGES)
    )



class RequirementFacts(BaseModel):
    """Every fact a requester may state. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str | None = None
    trigger: str | None = None
    schedule_cron: str | None = None
    webhook_path: str | None = None
    actions: list[str] | None = None
    url: str | None = None
    email_to: str | None = None
    email_subject: str | None = None
    slack_channel: str | None = None

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str | None) -> str | None:
        if v is not None and not 0 < len(v) <= 80:
            raise ValueError("name must be 1-80 characters")
        if v is not None and ("[" in v or "]" in v):
            raise ValueError("name may not contain square brackets")
        return v

    @field_validator("trigger")
    @classmethod
    def normalize_trigger(cls, v: str | None) -> str | None:
        if v is None:
            return None
        slug = _slug(v)
        return _TRIGGER_SYNONYMS.get(slug, slug)

    @field_validator("actions")
    @classmethod
    def normalize_actions(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        out: list[str] = []
        for action in v:
            slug = _slug(action)
            if slug and slug not in out:
                out.append(slug)
        return out

    @field_validator("schedule_cron")
    @classmethod
    def check_cron(cls, v: str | None) -> str | None:
        if v is not None and not is_valid_cron(v):
            raise ValueError(f"{v!r} is not a valid 5-field cron expression")
        return v

    @field_validator("webhook_path")
    @classmethod
    def check_path(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip("/").lower()
        if not _PATH_RE.match(v):
            raise ValueError("webhook_path may contain only a-z, 0-9, '/', '_' and '-'")
        return v

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str | None) -> str | None:
        if v is not None and not re.match(r"^https?://[^\s]+$", v):
            raise ValueError("url must be an absolute http(s) URL")
        return v

    @field_validator("email_to")
    @classmethod
    def check_email(cls, v: str | None) -> str | None:
        if v is not None and not _EMAIL_RE.fullmatch(v):
            raise ValueError(f"{v!r} is not an email address")
        return v

    @field_validator("slack_channel")
    @classmethod
    def check_channel(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v if v.startswith("#") else f"#{v}"
        if not re.fullmatch(r"#[a-z0-9][a-z0-9_\-]*", v):
            raise ValueError(f"{v!r} is not a Slack channel name")
        return v


def parse_facts(data: Any) -> dict[str, Any]:
    """Validate raw facts; return only the keys that carry a value.

    Raises ValidationError listing every offending fact.
    """
    if not isinstance(data, dict):
        raise ValidationError(["facts must be a JSON object"])
    try:
        facts = RequirementFacts.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError([
            f"{'.'.join(str(p) for p in err['loc']) or 'facts'}: {err['msg']}"
            for err in e.errors()
        ]) from e
    return facts.model_dump(exclude_none=True)


def merge_facts(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Merge newly stated facts into the draft. Scalars overwrite; actions append."""
    merged = dict(existing)
    for key, value in incoming.items():
        if key == "actions":
            actions = list(merged.get("actions") or [])
            actions.extend(a for a in value if a not in actions)
            merged["actions"] = actions
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Extractor contract
# ---------------------------------------------------------------------------


@dataclass
class Extraction:
    facts: dict[str, Any] = field(default_factory=dict)
    tokens_used: int = 0


class FactExtractor(Protocol):
    async def extract(self, message: str, history: list[Turn]) -> Extraction: ...


# ---------------------------------------------------------------------------
# Keyword extractor
# ---------------------------------------------------------------------------

# Checked in order; first match wins.
_TRIGGER_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("email_received", re.compile(
        r"\b(?:when(?:ever)? (?:i|we) (?:receive|get) an? e-?mail|new e-?mails?\b|incoming e-?mails?|e-?mail arrives)"
    )),
    ("sms", re.compile(
        r"\b(?:when(?:ever)? (?:i|we|someone) (?:receives?|gets?|sends?(?: us)?) an? (?:sms|text)|(?:incoming|new) (?:sms|text message))"
    )),
    ("file_watch", re.compile(r"\bwhen(?:ever)? an? file (?:is )?(?:uploaded|added|created|changes|changed)")),
    ("webhook", re.compile(r"\b(?:webhook|http (?:post|call|request) (?:comes in|arrives)|incoming http)")),
    ("schedule", re.compile(
        r"\b(?:every\b|daily|hourly|weekly|each (?:day|hour|morning|week)|on a schedule|cron\b|scheduled?\b)"
    )),
    ("manual", re.compile(r"\b(?:manual(?:ly)?|on demand|on-demand|when i (?:click|run it))")),
]

_ACTION_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("http_request", re.compile(
        r"\b(?:fetch|call (?:the |an |a )?(?:api|endpoint)|http request|api call|(?:get|pull|load) data from|post (?:it |the data |them )?to http)"
    )),
    ("send_email", re.compile(
        r"\b(?:send (?:me |them |us )?(?:an? )?e-?mails?|e-?mail (?:me|it|them|us|the results?)\b|mail (?:it |them )?to\b)"
    )),
    ("slack_message", re.compile(r"\bslack\b")),
    ("transform", re.compile(r"\b(?:transform|reformat|format the|map (?:the )?fields|clean up)\b")),
    ("send_sms", re.compile(r"\b(?:send (?:me |them )?(?:an? )?(?:sms|text message)|text me)\b")),
]

_NAME_RE = re.compile(r"(?:called|named|name it|titled?)\s+[\"']([^\"']{1,80})[\"']", re.IGNORECASE)
_URL_RE = re.compile(r"https?://[^\s\"'<>()]+")
_CHANNEL_RE = re.compile(r"(?<![\w/&])#([a-z0-9][a-z0-9_\-]*)")
_WEBHOOK_PATH_RE = re.compile(r"\bpath\s+[\"'`]?/?([a-z0-9][a-z0-9/_\-]*)")
_SUBJECT_RE = re.compile(r"subject\s+[\"']([^\"']+)[\"']", re.IGNORECASE)
_EXPLICIT_CRON_RE = re.compile(r"[`\"']((?:[\d*/,\-]+\s+){4}[\d*/,\-]+)[`\"']")
_AT_TIME_RE = re.compile(r"\bat (\d{1,2})(?::(\d{2}))?\s*(am|pm)?\b")


def _cron_from_text(text: str) -> str | None:
    explicit = _EXPLICIT_CRON_RE.search(text)
    if explicit and is_valid_cron(explicit.group(1)):
        return explicit.group(1)

    hour, minute = 9, 0
    at = _AT_TIME_RE.search(text)
    if at:
        hour = int(at.group(1)) % 12 if at.group(3) else int(at.group(1))
        if at.group(3) == "pm":
            hour += 12
        minute = int(at.group(2) or 0)
        if hour > 23 or minute > 59:
            hour, minute = 9, 0

    if m := re.search(r"\bevery (\d+) minutes?\b", text):
        every = int(m.group(1))
        return f"*/{every} * * * *" if 1 <= every <= 59 else None
    if m := re.search(r"\bevery (\d+) hours?\b", text):
        every = int(m.group(1))
        return f"0 */{every} * * *" if 1 <= every <= 23 else None
    if re.search(r"\bevery minute\b", text):
        return "* * * * *"
    if re.search(r"\b(?:every hour|hourly)\b", text):
        return "0 * * * *"
    if re.search(r"\b(?:weekly|every week|each week|every monday)\b", text):
        return f"{minute} {hour} * * 1"
    if re.search(r"\b(?:daily|every day|each day|every morning|each morning)\b", text) or at:
        return f"{minute} {hour} * * *"
    return None


class KeywordFactExtractor:
    """Deterministic rule-based extractor used when no LLM is configured."""

    async def extract(self, message: str, history: list[Turn]) -> Extraction:
        return Extraction(facts=parse_facts(self.extract_raw(message)))

    def extract_raw(self, message: str) -> dict[str, Any]:
        text = message.lower()
        raw: dict[str, Any] = {}

        for trigger, pattern in _TRIGGER_PATTERNS:
            if pattern.search(text):
                raw["trigger"] = trigger
                break

        if raw.get("trigger") in (None, "schedule"):
            cron = _cron_from_text(text)
            if cron:
                raw["schedule_cron"] = cron
                raw.setdefault("trigger", "schedule")

        hits: list[tuple[int, str]] = []
        for action, pattern in _ACTION_PATTERNS:
            m = pattern.search(text)
            if m:
                hits.append((m.start(), action))
        if hits:
            raw["actions"] = [action for _, action in sorted(hits)]

        if m := _NAME_RE.search(message):
            raw["name"] = m.group(1).strip()
        if m := _URL_RE.search(message):
            raw["url"] = m.group(0).rstrip(".,;:!?")
        if m := _EMAIL_RE.search(message):
            raw["email_to"] = m.group(0).rstrip(".")
        if m := _SUBJECT_RE.search(message):
            raw["email_subject"] = m.group(1).strip()
        if m := _CHANNEL_RE.search(text):
            raw["slack_channel"] = f"#{m.group(1)}"
        if m := _WEBHOOK_PATH_RE.search(text):
            raw["webhook_path"] = m.group(1).strip("/")
        return raw


# ---------------------------------------------------------------------------
# LLM extractor
# ---------------------------------------------------------------------------

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def _parse_json_object(text: str) -> Any:
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        raise ValidationError(["the extractor did not return a JSON object"])
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ValidationError([f"the extractor returned malformed JSON: {e.msg}"]) from e


class LLMFactExtractor:
    """Extract facts through the text-completion collaborator.

    Only the most recent history_window turns are sent. Completion errors
    (timeout, rate limit) propagate to the caller.
    """

    def __init__(
        self,
        engine: CompletionEngine,
        timeout: float = 20.0,
        max_tokens: int = 512,
        temperature: float = 0.0,
        history_window: int = 6,
    ) -> None:
        self._engine = engine
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._history_window = history_window

    async def extract(self, message: str, history: list[Turn]) -> Extraction:
        messages = [
            Message(role=t.role, content=t.content)
            for t in history[-self._history_window:]
        ]
        while messages and messages[0].role != "user":
            messages.pop(0)
        messages.append(Message(role="user", content=message))
        completion = await complete_with_timeout(
            self._engine,
            messages,
            system=system_prompt_for(AgentRole.ORCHESTRATOR),
            timeout=self._timeout,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )
        logger.debug("%s extracted: %r", self._engine.model_id, completion.text[:200])
        facts = parse_facts(_parse_json_object(completion.text))
        return Extraction(facts=facts, tokens_used=completion.tokens_used)
