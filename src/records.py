from __future__ import annotations

from dataclasses import dataclass


PROVIDER_OPENAI = "openai"
PROVIDER_GEMINI = "gemini"
PROVIDER_AZURE_FOUNDRY = "azure_foundry"
PROVIDER_NAMES = (PROVIDER_OPENAI, PROVIDER_GEMINI, PROVIDER_AZURE_FOUNDRY)

THINKING_MODES = ("off", "on")

STAGE_STARTED = "started"
STAGE_CONNECTED = "connected"
STAGE_FIRST_TOKEN = "first_token"
STAGE_COMPLETED = "completed"

NO_TEXT_PLACEHOLDER = "[No text returned]"


@dataclass(slots=True, frozen=True)
class ProviderRequest:
    provider: str
    model: str
    prompt: str
    thinking_mode: str


@dataclass(slots=True)
class Milestones:
    """Monotonic clock readings taken while serving one provider request."""

    started: float
    connected: float | None = None
    first_token: float | None = None
    completed: float | None = None


@dataclass(slots=True)
class Usage:
    input_tokens: int | None = None
    visible_output_tokens: int | None = None
    billed_output_tokens: int | None = None
    reasoning_tokens: int | None = None
    finish_reason: str | None = None


@dataclass(slots=True)
class Metrics:
    ttft_ms: float | None
    first_visible_token_ms: float | None
    total_latency_ms: float | None
    post_ttft_latency_ms: float | None
    generation_ms: float | None
    tokens_per_second: float | None
    input_tokens: int | None
    visible_output_tokens: int | None
    billed_output_tokens: int | None
    finish_reason: str | None
    thinking_budget: str | int
    streaming_enabled: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "ttftMs": self.ttft_ms,
            "firstVisibleTokenMs": self.first_visible_token_ms,
            "totalLatencyMs": self.total_latency_ms,
            "postTtftLatencyMs": self.post_ttft_latency_ms,
            "generationMs": self.generation_ms,
            "tokensPerSecond": self.tokens_per_second,
            "inputTokens": self.input_tokens,
            "visibleOutputTokens": self.visible_output_tokens,
            "billedOutputTokens": self.billed_output_tokens,
            "finishReason": self.finish_reason,
            "thinkingBudget": self.thinking_budget,
            "streamingEnabled": self.streaming_enabled,
        }


@dataclass(slots=True)
class ProviderOutcome:
    provider: str
    model: str
    response_text: str
    metrics: Metrics | None
    is_error: bool = False

    @classmethod
    def from_error(cls, provider: str, model: str, exc: BaseException) -> "ProviderOutcome":
        message = str(exc) or type(exc).__name__
        return cls(
            provider=provider,
            model=model,
            response_text=f"Error: {message}",
            metrics=None,
            is_error=True,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "provider": self.provider,
            "model": self.model,
            "responseText": self.response_text,
            "metrics": self.metrics.to_dict() if self.metrics is not None else None,
            "isError": self.is_error,
        }


@dataclass(slots=True)
class ProgressEvent:
    provider: str
    model: str
    stage: str
    elapsed_ms: float
    message: str

    def to_dict(self) -> dict[str, object]:
        return {
            "provider": self.provider,
            "model": self.model,
            "stage": self.stage,
            "elapsedMs": self.elapsed_ms,
            "message": self.message,
        }


@dataclass(slots=True)
class GatewayEvent:
    type: str
    progress: ProgressEvent | None = None
    result: ProviderOutcome | None = None
    ok: bool | None = None

    @classmethod
    def for_progress(cls, progress: ProgressEvent) -> "GatewayEvent":
        return cls(type="progress", progress=progress)

    @classmethod
    def for_result(cls, result: ProviderOutcome) -> "GatewayEvent":
        return cls(type="result", result=result)

    @classmethod
    def done(cls, ok: bool) -> "GatewayEvent":
        return cls(type="done", ok=ok)

    def to_dict(self) -> dict[str, object]:
        if self.type == "progress" and self.progress is not None:
            return {"type": "progress", "progress": self.progress.to_dict()}
        if self.type == "result" and self.result is not None:
            return {"type": "result", "result": self.result.to_dict()}
        return {"type": "done", "ok": bool(self.ok)}
