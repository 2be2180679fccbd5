from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from adapters import build_adapters
from errors import ValidationError
from providers import GatewayConfig
from records import THINKING_MODES
from runner import FanOutRunner


logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"
MAX_BODY_BYTES = 1_000_000

RunnerFactory = Callable[[GatewayConfig], FanOutRunner]


def _default_runner_factory(config: GatewayConfig) -> FanOutRunner:
    return FanOutRunner(build_adapters(config))


def parse_chat_request(payload: object) -> tuple[str, str]:
    """Validate a chat request body and return (prompt, thinking_mode)."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")

    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("prompt is required.")

    thinking_mode = payload.get("thinkingMode")
    if thinking_mode not in THINKING_MODES:
        raise ValidationError('thinkingMode must be "off" or "on".')
    return prompt, thinking_mode


async def stream_ndjson(runner: FanOutRunner, prompt: str, thinking_mode: str) -> AsyncIterator[str]:
    async for event in runner.run(prompt, thinking_mode):
        yield json.dumps(event.to_dict(), ensure_ascii=False) + "\n"


def create_app(
    config: GatewayConfig,
    runner_factory: RunnerFactory = _default_runner_factory,
) -> FastAPI:
    app = FastAPI(title="LLM Gateway")

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.get("/healthz")
    async def healthz() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/api/models")
    async def list_models() -> list[dict]:
        return config.list_models()

    @app.post("/api/chat")
    async def chat(request: Request) -> StreamingResponse:
        raw_body = await request.body()
        if len(raw_body) > MAX_BODY_BYTES:
            raise ValidationError("Payload too large.")
        try:
            payload = json.loads(raw_body) if raw_body else {}
        except json.JSONDecodeError as exc:
            raise ValidationError("Invalid JSON body.") from exc

        prompt, thinking_mode = parse_chat_request(payload)
        logger.info(
            "Chat request: thinking_mode=%s prompt_chars=%d providers=%d",
            thinking_mode, len(prompt), len(config.providers),
        )
        runner = runner_factory(config)
        return StreamingResponse(
            stream_ndjson(runner, prompt, thinking_mode),
            media_type=NDJSON_MEDIA_TYPE,
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    if config.static_dir is not None:
        if config.static_dir.is_dir():
            app.mount("/", StaticFiles(directory=config.static_dir, html=True), name="static")
        else:
            logger.warning("Static directory not found: %s", config.static_dir)

    return app
