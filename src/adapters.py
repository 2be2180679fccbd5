from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import AsyncIterator, Callable
from urllib.parse import quote

import httpx

from decoder import decode_event_stream
from errors import GatewayError, UpstreamError
from metrics import compute_metrics
from providers import (
    GEMINI_THINKING_BUDGETS,
    REASONING_EFFORT_PRESETS,
    GatewayConfig,
    ProviderSettings,
)
from records import (
    NO_TEXT_PLACEHOLDER,
    PROVIDER_AZURE_FOUNDRY,
    PROVIDER_GEMINI,
    PROVIDER_OPENAI,
    STAGE_COMPLETED,
    STAGE_CONNECTED,
    STAGE_FIRST_TOKEN,
    STAGE_STARTED,
    Milestones,
    ProgressEvent,
    ProviderOutcome,
    ProviderRequest,
    Usage,
)


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]

_STAGE_MESSAGES = {
    STAGE_STARTED: "Request started",
    STAGE_CONNECTED: "First streaming chunk received",
    STAGE_FIRST_TOKEN: "First visible token",
    STAGE_COMPLETED: "Response complete",
}


def _as_dict(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: object) -> list:
    return value if isinstance(value, list) else []


def _as_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return int(value)


def _as_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


@dataclass(slots=True)
class UpstreamCall:
    url: str
    payload: dict[str, object]
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class StreamState:
    text_parts: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def replace_text(self, text: str) -> None:
        self.text_parts = [text]


class ProviderAdapter:
    """One complete streaming interaction with a single upstream provider.

    Subclasses shape the upstream request and map their provider's native
    event objects onto deltas and usage; the streaming loop, milestone
    bookkeeping and the non-streaming fallback live here.
    """

    provider_name = ""
    display_name = ""
    default_finish_reason: str | None = None

    def __init__(
        self,
        settings: ProviderSettings,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.clock = clock

    @property
    def model(self) -> str:
        return self.settings.model

    def request_for(self, prompt: str, thinking_mode: str) -> ProviderRequest:
        return ProviderRequest(
            provider=self.provider_name,
            model=self.model,
            prompt=prompt,
            thinking_mode=thinking_mode,
        )

    def resolve_thinking(self, thinking_mode: str) -> str | int:
        raise NotImplementedError

    def build_call(
        self, request: ProviderRequest, thinking: str | int, stream: bool
    ) -> UpstreamCall:
        raise NotImplementedError

    def handle_event(self, event: dict, state: StreamState) -> str:
        """Update ``state`` from one decoded event and return its visible delta."""
        raise NotImplementedError

    def parse_response(self, payload: dict) -> tuple[str, Usage]:
        """Extract (text, usage) from a non-streaming response body."""
        raise NotImplementedError

    async def invoke(
        self, request: ProviderRequest, emit: ProgressCallback
    ) -> ProviderOutcome:
        self.settings.require_configured()
        thinking = self.resolve_thinking(request.thinking_mode)

        milestones = Milestones(started=self.clock())
        self._emit(emit, request, STAGE_STARTED, milestones, milestones.started)
        state = StreamState()
        streaming_enabled = True

        try:
            async with httpx.AsyncClient(
                transport=self.transport, timeout=httpx.Timeout(None)
            ) as client:
                await self._stream(client, request, thinking, milestones, state, emit)
                if not state.text.strip():
                    logger.debug(
                        "%s stream yielded no text; trying non-streaming request",
                        self.provider_name,
                    )
                    fallback = await self._fetch_fallback(client, request, thinking)
                    if fallback is not None and fallback[0].strip():
                        fallback_text, fallback_usage = fallback
                        state.replace_text(fallback_text)
                        state.usage = fallback_usage
                        state.finish_reason = fallback_usage.finish_reason or state.finish_reason
                        milestones.completed = self.clock()
                        streaming_enabled = False
        except GatewayError:
            raise
        except (httpx.HTTPError, httpx.StreamError, httpx.InvalidURL, ValueError) as exc:
            raise UpstreamError(f"{self.display_name} request failed: {exc}") from exc

        usage = state.usage
        usage.finish_reason = state.finish_reason or self.default_finish_reason
        text = state.text
        metrics = compute_metrics(
            milestones=milestones,
            usage=usage,
            response_text=text,
            thinking_budget=thinking,
            streaming_enabled=streaming_enabled,
        )
        return ProviderOutcome(
            provider=self.provider_name,
            model=self.model,
            response_text=text.strip() or NO_TEXT_PLACEHOLDER,
            metrics=metrics,
        )

    async def _stream(
        self,
        client: httpx.AsyncClient,
        request: ProviderRequest,
        thinking: str | int,
        milestones: Milestones,
        state: StreamState,
        emit: ProgressCallback,
    ) -> None:
        call = self.build_call(request, thinking, stream=True)
        logger.debug("Streaming %s request to %s", self.provider_name, call.url)
        async with client.stream(
            "POST", call.url, json=call.payload, headers=call.headers, params=call.params
        ) as response:
            if not response.is_success or response.status_code == httpx.codes.NO_CONTENT:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise UpstreamError(
                    f"{self.display_name} request failed: {response.status_code} {body}".strip(),
                    status_code=response.status_code,
                    body=body,
                )

            chunks = self._mark_connected(response, request, milestones, emit)
            async for event in decode_event_stream(chunks):
                delta = self.handle_event(event, state)
                if not delta:
                    continue
                if milestones.first_token is None:
                    milestones.first_token = self.clock()
                    self._emit(emit, request, STAGE_FIRST_TOKEN, milestones, milestones.first_token)
                state.text_parts.append(delta)

        milestones.completed = self.clock()
        self._emit(emit, request, STAGE_COMPLETED, milestones, milestones.completed)

    async def _mark_connected(
        self,
        response: httpx.Response,
        request: ProviderRequest,
        milestones: Milestones,
        emit: ProgressCallback,
    ) -> AsyncIterator[bytes]:
        async for chunk in response.aiter_bytes():
            if not chunk:
                continue
            if milestones.connected is None:
                milestones.connected = self.clock()
                self._emit(emit, request, STAGE_CONNECTED, milestones, milestones.connected)
            yield chunk

    async def _fetch_fallback(
        self,
        client: httpx.AsyncClient,
        request: ProviderRequest,
        thinking: str | int,
    ) -> tuple[str, Usage] | None:
        call = self.build_call(request, thinking, stream=False)
        response = await client.post(
            call.url, json=call.payload, headers=call.headers, params=call.params
        )
        if not response.is_success:
            logger.warning(
                "%s non-streaming fallback failed with status %d",
                self.provider_name,
                response.status_code,
            )
            return None
        return self.parse_response(_as_dict(response.json()))

    def _emit(
        self,
        emit: ProgressCallback,
        request: ProviderRequest,
        stage: str,
        milestones: Milestones,
        reached_at: float,
    ) -> None:
        emit(
            ProgressEvent(
                provider=request.provider,
                model=request.model,
                stage=stage,
                elapsed_ms=round((reached_at - milestones.started) * 1000.0, 2),
                message=_STAGE_MESSAGES[stage],
            )
        )


class OpenAIResponsesAdapter(ProviderAdapter):
    provider_name = PROVIDER_OPENAI
    display_name = "OpenAI"
    default_finish_reason = "completed"

    def resolve_thinking(self, thinking_mode: str) -> str:
        return REASONING_EFFORT_PRESETS.get(thinking_mode, REASONING_EFFORT_PRESETS["off"])

    def build_call(self, request: ProviderRequest, thinking: str | int, stream: bool) -> UpstreamCall:
        base_url = (self.settings.base_url or "").rstrip("/")
        return UpstreamCall(
            url=f"{base_url}/responses",
            payload={
                "model": request.model,
                "input": request.prompt,
                "stream": stream,
                "reasoning": {"effort": thinking},
            },
            headers={"Authorization": f"Bearer {self.settings.api_key}"},
        )

    def handle_event(self, event: dict, state: StreamState) -> str:
        event_type = event.get("type")
        if event_type == "response.output_text.delta":
            delta = event.get("delta")
            return delta if isinstance(delta, str) else ""

        if event_type == "response.output_item.done":
            item = _as_dict(event.get("item"))
            reason = _as_str(item.get("finish_reason")) or _as_str(item.get("status"))
            if reason:
                state.finish_reason = reason
        elif event_type == "response.completed":
            response = _as_dict(event.get("response"))
            state.usage = self._usage_from(response.get("usage"))
            state.finish_reason = _as_str(response.get("status")) or state.finish_reason
            output_text = _as_str(response.get("output_text"))
            if not state.text and output_text:
                state.replace_text(output_text)
        return ""

    def parse_response(self, payload: dict) -> tuple[str, Usage]:
        text = _as_str(payload.get("output_text")) or ""
        if not text:
            parts: list[str] = []
            for item in _as_list(payload.get("output")):
                for content in _as_list(_as_dict(item).get("content")):
                    content = _as_dict(content)
                    if content.get("type") == "output_text" and isinstance(content.get("text"), str):
                        parts.append(content["text"])
            text = "".join(parts)
        usage = self._usage_from(payload.get("usage"))
        usage.finish_reason = _as_str(payload.get("status"))
        return text.strip(), usage

    @staticmethod
    def _usage_from(raw: object) -> Usage:
        usage = _as_dict(raw)
        details = _as_dict(usage.get("output_tokens_details"))
        return Usage(
            input_tokens=_as_int(usage.get("input_tokens")),
            visible_output_tokens=_as_int(details.get("text_tokens")),
            billed_output_tokens=_as_int(usage.get("output_tokens")),
            reasoning_tokens=_as_int(details.get("reasoning_tokens")),
        )


class GeminiAdapter(ProviderAdapter):
    provider_name = PROVIDER_GEMINI
    display_name = "Gemini"

    def resolve_thinking(self, thinking_mode: str) -> int:
        return GEMINI_THINKING_BUDGETS.get(thinking_mode, GEMINI_THINKING_BUDGETS["off"])

    def build_call(self, request: ProviderRequest, thinking: str | int, stream: bool) -> UpstreamCall:
        base_url = (self.settings.base_url or "").rstrip("/")
        model = quote(request.model, safe="")
        method = "streamGenerateContent" if stream else "generateContent"
        params = {"key": self.settings.api_key or ""}
        if stream:
            params = {"alt": "sse", **params}
        return UpstreamCall(
            url=f"{base_url}/models/{model}:{method}",
            payload={
                "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
                "generationConfig": {"thinkingConfig": {"thinkingBudget": thinking}},
            },
            params=params,
        )

    def handle_event(self, event: dict, state: StreamState) -> str:
        if "usageMetadata" in event:
            state.usage = self._usage_from(event.get("usageMetadata"))
        reason = self._finish_reason(event)
        if reason:
            state.finish_reason = reason
        return self._candidate_text(event)

    def parse_response(self, payload: dict) -> tuple[str, Usage]:
        usage = self._usage_from(payload.get("usageMetadata"))
        usage.finish_reason = self._finish_reason(payload)
        return self._candidate_text(payload).strip(), usage

    @staticmethod
    def _first_candidate(payload: dict) -> dict:
        candidates = _as_list(payload.get("candidates"))
        return _as_dict(candidates[0]) if candidates else {}

    def _candidate_text(self, payload: dict) -> str:
        content = _as_dict(self._first_candidate(payload).get("content"))
        return "".join(
            part["text"]
            for part in map(_as_dict, _as_list(content.get("parts")))
            if isinstance(part.get("text"), str)
        )

    def _finish_reason(self, payload: dict) -> str | None:
        return _as_str(self._first_candidate(payload).get("finishReason"))

    @staticmethod
    def _usage_from(raw: object) -> Usage:
        usage = _as_dict(raw)
        return Usage(
            input_tokens=_as_int(usage.get("promptTokenCount")),
            visible_output_tokens=_as_int(usage.get("candidatesTokenCount")),
            reasoning_tokens=_as_int(usage.get("thoughtsTokenCount")),
        )


class AzureFoundryAdapter(ProviderAdapter):
    provider_name = PROVIDER_AZURE_FOUNDRY
    display_name = "Azure Foundry"
    default_finish_reason = "completed"

    def resolve_thinking(self, thinking_mode: str) -> str:
        return REASONING_EFFORT_PRESETS.get(thinking_mode, REASONING_EFFORT_PRESETS["off"])

    def build_call(self, request: ProviderRequest, thinking: str | int, stream: bool) -> UpstreamCall:
        endpoint = (self.settings.base_url or "").rstrip("/")
        deployment = quote(self.settings.deployment or "", safe="")
        payload: dict[str, object] = {
            "messages": [{"role": "user", "content": request.prompt}],
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if thinking != REASONING_EFFORT_PRESETS["off"]:
            payload["reasoning_effort"] = thinking
        return UpstreamCall(
            url=f"{endpoint}/openai/deployments/{deployment}/chat/completions",
            payload=payload,
            headers={"api-key": self.settings.api_key or ""},
            params={"api-version": self.settings.api_version or ""},
        )

    def handle_event(self, event: dict, state: StreamState) -> str:
        if event.get("usage"):
            state.usage = self._usage_from(event.get("usage"))
        choices = _as_list(event.get("choices"))
        choice = _as_dict(choices[0]) if choices else {}
        reason = _as_str(choice.get("finish_reason"))
        if reason:
            state.finish_reason = reason
        delta = _as_dict(choice.get("delta")).get("content")
        return delta if isinstance(delta, str) else ""

    def parse_response(self, payload: dict) -> tuple[str, Usage]:
        choices = _as_list(payload.get("choices"))
        choice = _as_dict(choices[0]) if choices else {}
        content = _as_dict(choice.get("message")).get("content")
        usage = self._usage_from(payload.get("usage"))
        usage.finish_reason = _as_str(choice.get("finish_reason"))
        return (content if isinstance(content, str) else "").strip(), usage

    @staticmethod
    def _usage_from(raw: object) -> Usage:
        usage = _as_dict(raw)
        completion_tokens = _as_int(usage.get("completion_tokens"))
        reasoning_tokens = _as_int(
            _as_dict(usage.get("completion_tokens_details")).get("reasoning_tokens")
        )
        visible = completion_tokens
        if completion_tokens is not None and reasoning_tokens is not None:
            visible = max(completion_tokens - reasoning_tokens, 0)
        return Usage(
            input_tokens=_as_int(usage.get("prompt_tokens")),
            visible_output_tokens=visible,
            billed_output_tokens=completion_tokens,
            reasoning_tokens=reasoning_tokens,
        )


ADAPTER_TYPES: dict[str, type[ProviderAdapter]] = {
    PROVIDER_OPENAI: OpenAIResponsesAdapter,
    PROVIDER_GEMINI: GeminiAdapter,
    PROVIDER_AZURE_FOUNDRY: AzureFoundryAdapter,
}


def build_adapters(
    config: GatewayConfig,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], float] = time.perf_counter,
) -> list[ProviderAdapter]:
    return [
        ADAPTER_TYPES[settings.name](settings, transport=transport, clock=clock)
        for settings in config.providers
    ]
