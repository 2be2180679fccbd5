from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
import sys

from dotenv import load_dotenv
import typer

from adapters import build_adapters
from errors import ConfigurationError, ValidationError
from gateway import create_app, parse_chat_request
from providers import GatewayConfig
from records import GatewayEvent, ProviderOutcome
from runner import FanOutRunner


logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure root logger from LLM_GATEWAY_LOG_LEVEL env var (default: WARNING)."""
    level_name = os.environ.get("LLM_GATEWAY_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


app = typer.Typer(no_args_is_help=True, help="Multi-provider LLM streaming gateway")


DEFAULT_ENV_FILE = Path(".env")


def _load_config(env_file: Path) -> GatewayConfig:
    if env_file.exists():
        logger.debug("Loading environment from %s", env_file)
        load_dotenv(env_file, override=False)
    try:
        return GatewayConfig.from_env(os.environ)
    except ConfigurationError as exc:
        typer.echo(f"Invalid configuration: {exc}")
        raise typer.Exit(1)


def _format_metric(value: object) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def _render_outcomes(outcomes: list[ProviderOutcome]) -> str:
    lines = ["Provider comparison", ""]
    for rank, outcome in enumerate(outcomes, start=1):
        header = f"{rank}. {outcome.provider} ({outcome.model})"
        if outcome.is_error:
            lines.append(f"{header} FAILED")
            lines.append(f"   {outcome.response_text}")
            lines.append("")
            continue

        lines.append(header)
        metrics = outcome.metrics.to_dict() if outcome.metrics is not None else {}
        lines.append(
            "   "
            + " ".join(
                f"{key}={_format_metric(metrics.get(key))}"
                for key in (
                    "ttftMs",
                    "firstVisibleTokenMs",
                    "totalLatencyMs",
                    "tokensPerSecond",
                    "billedOutputTokens",
                    "thinkingBudget",
                    "streamingEnabled",
                )
            )
        )
        lines.append(f"   {outcome.response_text}")
        lines.append("")
    return "\n".join(lines).rstrip()


async def _run_compare(
    runner: FanOutRunner, prompt: str, thinking_mode: str, json_output: bool
) -> tuple[list[ProviderOutcome], GatewayEvent | None]:
    outcomes: list[ProviderOutcome] = []
    done_event: GatewayEvent | None = None
    async for event in runner.run(prompt, thinking_mode):
        if json_output:
            typer.echo(json.dumps(event.to_dict(), ensure_ascii=False))
        if event.progress is not None and not json_output:
            progress = event.progress
            typer.echo(
                f"[progress] {progress.provider} {progress.stage} {progress.elapsed_ms}ms",
                err=True,
            )
        elif event.result is not None:
            outcomes.append(event.result)
        elif event.type == "done":
            done_event = event
    return outcomes, done_event


@app.command("compare")
def compare(
    prompt: str = typer.Option(..., "--prompt", "-p", help="Prompt sent to every provider"),
    thinking: str = typer.Option("off", "--thinking", help="Thinking mode: off or on"),
    json_output: bool = typer.Option(False, "--json", help="Print NDJSON events"),
    env_file: Path = typer.Option(DEFAULT_ENV_FILE, "--env-file", help="Optional .env file"),
) -> None:
    try:
        prompt, thinking_mode = parse_chat_request({"prompt": prompt, "thinkingMode": thinking})
    except ValidationError as exc:
        typer.echo(f"Invalid request: {exc}")
        raise typer.Exit(1)

    config = _load_config(env_file)
    runner = FanOutRunner(build_adapters(config))
    logger.info("Comparing %d provider(s) thinking_mode=%s", len(config.providers), thinking_mode)
    outcomes, done_event = asyncio.run(
        _run_compare(runner, prompt, thinking_mode, json_output)
    )

    if not json_output:
        typer.echo(_render_outcomes(outcomes))
    if done_event is None or not done_event.ok:
        raise typer.Exit(1)


@app.command("models")
def models(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    env_file: Path = typer.Option(DEFAULT_ENV_FILE, "--env-file", help="Optional .env file"),
) -> None:
    config = _load_config(env_file)
    entries = config.list_models()
    if json_output:
        typer.echo(json.dumps(entries, ensure_ascii=False))
        return
    for entry in entries:
        status = "configured" if entry["configured"] else "missing credentials"
        typer.echo(f"{entry['id']}\t{entry['label']}\t{status}")


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address (default: HOST or 0.0.0.0)"),
    port: int | None = typer.Option(None, "--port", help="Bind port (default: PORT or 3000)"),
    env_file: Path = typer.Option(DEFAULT_ENV_FILE, "--env-file", help="Optional .env file"),
) -> None:
    import uvicorn

    config = _load_config(env_file)
    bind_host = host or config.host
    bind_port = port or config.port
    logger.info("Starting gateway on http://%s:%d", bind_host, bind_port)
    uvicorn.run(create_app(config), host=bind_host, port=bind_port)


def main() -> None:
    _setup_logging()
    app()


if __name__ == "__main__":
    main()
