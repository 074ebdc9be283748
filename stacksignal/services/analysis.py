from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, ValidationError, field_validator, model_validator

from stacksignal.core.config import Settings
from stacksignal.services.records import JobPostingRecord

logger = logging.getLogger(__name__)

ToolDetected = Literal["Outreach.io", "SalesLoft", "Both", "None"]
SignalType = Literal["required", "preferred", "mention", "none"]
Confidence = Literal["high", "medium", "low"]

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

_TOOL_ALIASES = {
    "outreach": "Outreach.io",
    "outreach.io": "Outreach.io",
    "outreachio": "Outreach.io",
    "salesloft": "SalesLoft",
    "sales loft": "SalesLoft",
    "sales-loft": "SalesLoft",
    "both": "Both",
    "none": "None",
    "": "None",
}
_SIGNAL_ALIASES = {
    "stack_mention": "mention",
    "explicit_mention": "mention",
    "mentioned": "mention",
    "": "none",
}

SYSTEM_PROMPT = """You analyze job descriptions to decide whether the hiring company uses Outreach.io or SalesLoft.

Distinguish "Outreach" the product from "outreach" the general sales activity.

Valid indicators for Outreach.io: "Outreach.io", "Outreach platform", "Outreach sequences",
a capitalized "Outreach" listed with other sales tools, "experience with Outreach".
Valid indicators for SalesLoft: "SalesLoft", "Salesloft", "Sales Loft", "experience with SalesLoft".
Not valid: "sales outreach", "cold outreach", "outreach efforts", "customer outreach".

Respond with ONLY a JSON object, no markdown:
{
  "uses_tool": true,
  "tool_detected": "Outreach.io" | "SalesLoft" | "Both" | "None",
  "signal_type": "required" | "preferred" | "mention" | "none",
  "confidence": "high" | "medium" | "low",
  "context": "exact quote mentioning the tool"
}"""


class AnalysisError(Exception):
    """Raised when a posting cannot be classified."""


class AnalysisVerdict(BaseModel):
    uses_tool: bool
    tool_detected: ToolDetected
    signal_type: SignalType = "none"
    confidence: Confidence = "medium"
    context: str = ""

    @field_validator("tool_detected", mode="before")
    @classmethod
    def _coerce_tool(cls, value: Any) -> Any:
        if value is None:
            return "None"
        if isinstance(value, str):
            return _TOOL_ALIASES.get(value.strip().casefold(), value.strip())
        return value

    @field_validator("signal_type", mode="before")
    @classmethod
    def _coerce_signal(cls, value: Any) -> Any:
        if value is None:
            return "none"
        if isinstance(value, str):
            lowered = value.strip().casefold()
            return _SIGNAL_ALIASES.get(lowered, lowered)
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> Any:
        if value is None:
            return "medium"
        if isinstance(value, str):
            return value.strip().casefold()
        return value

    @field_validator("context", mode="before")
    @classmethod
    def _coerce_context(cls, value: Any) -> Any:
        return "" if value is None else value

    @model_validator(mode="after")
    def _check_consistency(self) -> AnalysisVerdict:
        if self.uses_tool and self.tool_detected == "None":
            raise ValueError("uses_tool is true but no tool was detected")
        if not self.uses_tool and self.tool_detected != "None":
            raise ValueError(f"uses_tool is false but tool_detected is {self.tool_detected}")
        return self


class AnalysisEngine(Protocol):
    async def analyze(self, posting: JobPostingRecord) -> AnalysisVerdict: ...


def parse_verdict(raw: str | dict[str, Any]) -> AnalysisVerdict:
    if isinstance(raw, str):
        text = _strip_code_fence(raw)
        if not text:
            raise AnalysisError("empty classifier output")
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise AnalysisError(f"classifier output is not valid JSON: {text[:100]!r}") from exc
    if not isinstance(raw, dict):
        raise AnalysisError("classifier output is not a JSON object")
    try:
        return AnalysisVerdict.model_validate(raw)
    except ValidationError as exc:
        raise AnalysisError(f"classifier output failed validation: {exc.errors()[0]['msg']}") from exc


class OpenAIAnalysisEngine:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-5-mini",
        reasoning_effort: str = "medium",
        timeout_seconds: float = 60.0,
        max_attempts: int = 3,
        retry_base_seconds: float = 2.0,
        max_description_chars: int = 12000,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.reasoning_effort = reasoning_effort
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self.max_description_chars = max_description_chars
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> OpenAIAnalysisEngine:
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            reasoning_effort=settings.openai_reasoning_effort,
            timeout_seconds=settings.analysis_timeout_seconds,
            max_attempts=settings.analysis_max_attempts,
            retry_base_seconds=settings.analysis_retry_base_seconds,
            max_description_chars=settings.analysis_max_description_chars,
        )

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def analyze(self, posting: JobPostingRecord) -> AnalysisVerdict:
        if not posting.company.strip():
            raise AnalysisError("posting has no company name")
        if not posting.title.strip() and not posting.description.strip():
            raise AnalysisError("posting has neither title nor description")
        if not self.api_key:
            raise AnalysisError("SS_OPENAI_API_KEY is not configured")

        payload = self._build_request(posting)
        last_error = "classifier request failed"
        last_cause: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._get_client().post(
                    f"{self.base_url}/responses",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            except httpx.TimeoutException as exc:
                last_error = "classifier request timed out"
                last_cause = exc
            except httpx.TransportError as exc:
                last_error = f"classifier transport error: {exc}"
                last_cause = exc
            else:
                if response.status_code in RETRYABLE_STATUS_CODES:
                    last_error = f"classifier returned HTTP {response.status_code}"
                    last_cause = None
                elif response.status_code >= 400:
                    raise AnalysisError(
                        f"classifier returned HTTP {response.status_code}: {response.text[:200]}"
                    )
                else:
                    return parse_verdict(_extract_output_text(response))

            if attempt < self.max_attempts:
                delay = self.retry_base_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "Classifier attempt %s/%s failed for job_id=%s: %s; retrying in %.1fs",
                    attempt,
                    self.max_attempts,
                    posting.id,
                    last_error,
                    delay,
                )
                await self._sleep(delay)

        raise AnalysisError(last_error) from last_cause

    def _build_request(self, posting: JobPostingRecord) -> dict[str, Any]:
        description = posting.description[: self.max_description_chars]
        return {
            "model": self.model,
            "input": [
                {"role": "developer", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"Company: {posting.company}\nJob Title: {posting.title}\nJob Description: {description}"
                    ),
                },
            ],
            "reasoning": {"effort": self.reasoning_effort},
            "text": {"verbosity": "low"},
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client


def _extract_output_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError as exc:
        raise AnalysisError("classifier response is not JSON") from exc
    if not isinstance(data, dict):
        raise AnalysisError("classifier response is not a JSON object")

    output_text = data.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text

    output = data.get("output") or []
    if not isinstance(output, list):
        raise AnalysisError("classifier response output is not a list")
    for item in output:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        contents = item.get("content") or []
        if not isinstance(contents, list):
            raise AnalysisError("classifier message content is not a list")
        for content in contents:
            if isinstance(content, dict) and content.get("type") == "output_text" and content.get("text"):
                return str(content["text"])
    raise AnalysisError("empty classifier output")


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
    return stripped.strip()
