from __future__ import annotations

import math
import re

from records import Metrics, Milestones, Usage


_WHITESPACE_RUN = re.compile(r"\s+")


def _round_ms(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return round(value, 2)


def _elapsed_ms(start: float, end: float | None) -> float | None:
    if end is None:
        return None
    return (end - start) * 1000.0


def _difference(left: float | None, right: float | None) -> float | None:
    if left is None or right is None:
        return None
    return left - right


def estimate_visible_tokens(text: str | None) -> int:
    normalized = (text or "").strip()
    if not normalized:
        return 0
    return len(_WHITESPACE_RUN.split(normalized))


def tokens_per_second(billed_output_tokens: int | None, total_latency_ms: float | None) -> float | None:
    if not billed_output_tokens or not total_latency_ms or total_latency_ms <= 0:
        return None
    return round(billed_output_tokens / (total_latency_ms / 1000.0), 2)


def resolve_output_tokens(usage: Usage, response_text: str) -> tuple[int | None, int | None]:
    """Return (visible, billed) output token counts.

    Visible tokens fall back to a whitespace estimate of the response text;
    billed tokens fall back to visible plus any separately reported reasoning
    tokens.
    """
    visible = usage.visible_output_tokens
    if visible is None:
        estimate = estimate_visible_tokens(response_text)
        visible = estimate if estimate > 0 else None

    billed = usage.billed_output_tokens
    if billed is None and visible is not None:
        billed = visible + (usage.reasoning_tokens or 0)
    return visible, billed


def compute_metrics(
    milestones: Milestones,
    usage: Usage,
    response_text: str,
    thinking_budget: str | int,
    streaming_enabled: bool = True,
) -> Metrics:
    ttft = _elapsed_ms(milestones.started, milestones.connected)
    first_token = _elapsed_ms(milestones.started, milestones.first_token)
    total = _elapsed_ms(milestones.started, milestones.completed)
    visible, billed = resolve_output_tokens(usage, response_text)

    return Metrics(
        ttft_ms=_round_ms(ttft),
        first_visible_token_ms=_round_ms(first_token),
        total_latency_ms=_round_ms(total),
        post_ttft_latency_ms=_round_ms(_difference(total, ttft)),
        generation_ms=_round_ms(_difference(total, first_token)),
        tokens_per_second=tokens_per_second(billed, total),
        input_tokens=usage.input_tokens,
        visible_output_tokens=visible,
        billed_output_tokens=billed,
        finish_reason=usage.finish_reason,
        thinking_budget=thinking_budget,
        streaming_enabled=streaming_enabled,
    )
