from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from metrics import (
    compute_metrics,
    estimate_visible_tokens,
    resolve_output_tokens,
    tokens_per_second,
)
from records import Milestones, Usage


def test_estimate_visible_tokens_splits_on_whitespace_runs() -> None:
    assert estimate_visible_tokens("Hello world") == 2
    assert estimate_visible_tokens("  one \n\t two   three ") == 3
    assert estimate_visible_tokens("") == 0
    assert estimate_visible_tokens("   ") == 0
    assert estimate_visible_tokens(None) == 0


def test_tokens_per_second_rounds_to_two_decimals() -> None:
    assert tokens_per_second(7, 3000.0) == pytest.approx(2.33)
    assert tokens_per_second(3, 300.0) == pytest.approx(10.0)


@pytest.mark.parametrize(
    ("billed", "total_ms"),
    [(None, 1000.0), (0, 1000.0), (5, 0.0), (5, None)],
)
def test_tokens_per_second_is_none_without_operands(billed, total_ms) -> None:  # noqa: ANN001
    assert tokens_per_second(billed, total_ms) is None


def test_compute_metrics_for_full_timeline() -> None:
    metrics = compute_metrics(
        milestones=Milestones(started=10.0, connected=10.25, first_token=10.5, completed=12.0),
        usage=Usage(input_tokens=4, billed_output_tokens=20, finish_reason="stop"),
        response_text="a b c",
        thinking_budget="medium",
    )
    assert metrics.ttft_ms == pytest.approx(250.0)
    assert metrics.first_visible_token_ms == pytest.approx(500.0)
    assert metrics.total_latency_ms == pytest.approx(2000.0)
    assert metrics.post_ttft_latency_ms == pytest.approx(1750.0)
    assert metrics.generation_ms == pytest.approx(1500.0)
    assert metrics.tokens_per_second == pytest.approx(10.0)
    assert metrics.input_tokens == 4
    assert metrics.visible_output_tokens == 3
    assert metrics.billed_output_tokens == 20
    assert metrics.finish_reason == "stop"
    assert metrics.thinking_budget == "medium"
    assert metrics.streaming_enabled is True


def test_compute_metrics_without_visible_text() -> None:
    metrics = compute_metrics(
        milestones=Milestones(started=0.0, connected=0.1, first_token=None, completed=0.4),
        usage=Usage(),
        response_text="",
        thinking_budget=0,
    )
    assert metrics.ttft_ms == pytest.approx(100.0)
    assert metrics.first_visible_token_ms is None
    assert metrics.generation_ms is None
    assert metrics.post_ttft_latency_ms == pytest.approx(300.0)
    assert metrics.visible_output_tokens is None
    assert metrics.billed_output_tokens is None
    assert metrics.tokens_per_second is None


def test_compute_metrics_with_zero_duration() -> None:
    metrics = compute_metrics(
        milestones=Milestones(started=5.0, connected=5.0, first_token=5.0, completed=5.0),
        usage=Usage(billed_output_tokens=10),
        response_text="x",
        thinking_budget="none",
        streaming_enabled=False,
    )
    assert metrics.total_latency_ms == 0.0
    assert metrics.tokens_per_second is None
    assert metrics.streaming_enabled is False


def test_resolve_output_tokens_adds_reasoning_to_visible_when_billed_missing() -> None:
    visible, billed = resolve_output_tokens(
        Usage(visible_output_tokens=12, reasoning_tokens=30), "ignored text"
    )
    assert (visible, billed) == (12, 42)


def test_resolve_output_tokens_prefers_reported_billed_total() -> None:
    visible, billed = resolve_output_tokens(Usage(billed_output_tokens=9), "Hello world")
    assert (visible, billed) == (2, 9)


def test_metrics_to_dict_uses_wire_names() -> None:
    metrics = compute_metrics(
        milestones=Milestones(started=0.0, connected=0.1, first_token=0.2, completed=0.3),
        usage=Usage(billed_output_tokens=3),
        response_text="pong",
        thinking_budget="none",
    )
    assert set(metrics.to_dict()) == {
        "ttftMs",
        "firstVisibleTokenMs",
        "totalLatencyMs",
        "postTtftLatencyMs",
        "generationMs",
        "tokensPerSecond",
        "inputTokens",
        "visibleOutputTokens",
        "billedOutputTokens",
        "finishReason",
        "thinkingBudget",
        "streamingEnabled",
    }
