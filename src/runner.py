from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Protocol

from errors import GatewayError
from records import GatewayEvent, ProgressEvent, ProviderOutcome, ProviderRequest


logger = logging.getLogger(__name__)


class AdapterProtocol(Protocol):
    provider_name: str

    @property
    def model(self) -> str:
        ...

    def request_for(self, prompt: str, thinking_mode: str) -> ProviderRequest:
        ...

    async def invoke(self, request: ProviderRequest, emit) -> ProviderOutcome:  # noqa: ANN001
        ...


class FanOutRunner:
    """Sends one prompt to every adapter at once and merges their events.

    Progress events are forwarded as they arrive. Results are yielded in the
    order the adapters finish, one per adapter, followed by a single ``done``
    event.
    """

    def __init__(self, adapters: list[AdapterProtocol]) -> None:
        self.adapters = adapters

    async def run(self, prompt: str, thinking_mode: str) -> AsyncIterator[GatewayEvent]:
        progress: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        pending: set[asyncio.Task[ProviderOutcome]] = {
            asyncio.create_task(
                self._invoke_adapter(adapter, adapter.request_for(prompt, thinking_mode), progress),
                name=f"fan-out-{adapter.provider_name}",
            )
            for adapter in self.adapters
        }
        logger.debug("Fan-out started for %d provider(s)", len(pending))

        any_success = False
        while pending:
            next_progress = asyncio.create_task(progress.get(), name="fan-out-progress-getter")
            try:
                done, _ = await asyncio.wait(
                    {next_progress, *pending}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                # A getter cancelled before it resumes leaves its item in the queue.
                if not next_progress.done():
                    next_progress.cancel()
            if next_progress.done() and not next_progress.cancelled():
                yield GatewayEvent.for_progress(next_progress.result())

            while not progress.empty():
                yield GatewayEvent.for_progress(progress.get_nowait())

            for task in done:
                if task is next_progress:
                    continue
                pending.discard(task)
                outcome = task.result()
                any_success = any_success or not outcome.is_error
                logger.debug(
                    "Provider %s settled (error=%s)", outcome.provider, outcome.is_error
                )
                yield GatewayEvent.for_result(outcome)

        yield GatewayEvent.done(ok=any_success)

    @staticmethod
    async def _invoke_adapter(
        adapter: AdapterProtocol,
        request: ProviderRequest,
        progress: asyncio.Queue[ProgressEvent],
    ) -> ProviderOutcome:
        try:
            return await adapter.invoke(request, progress.put_nowait)
        except GatewayError as exc:
            logger.debug("Provider %s failed: %s", request.provider, exc)
            return ProviderOutcome.from_error(request.provider, request.model, exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected failure in provider %s", request.provider)
            return ProviderOutcome.from_error(request.provider, request.model, exc)
