from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Optional

from .base import BaseBackend
from .command import CompilationRequest
from .engine import EngineFactory, load_engine_factory, query_engine_version, run_engine
from .errors import CompilerError, ConfigurationError, EngineError
from .events import (
    Completed,
    Failed,
    LifecycleEvent,
    StandardError,
    StandardOutput,
    Started,
)

_DONE = object()


def _drain(queue: asyncio.Queue) -> list:
    """Take every event already queued, without waiting."""
    events = []
    while True:
        try:
            event = queue.get_nowait()
        except asyncio.QueueEmpty:
            return events
        if event is not _DONE:
            events.append(event)


def _retrieve_outcome(future: asyncio.Future) -> None:
    # Mark the engine's exception as seen when the stream was abandoned early.
    if not future.cancelled():
        future.exception()


class EmbeddedBackend(BaseBackend):
    """
    Runs an in-process OpenSCAD engine, one fresh instance per compilation.

    The engine's entry point is synchronous, so each run happens on a worker
    thread. Output callbacks hop back onto the event loop in the order the
    engine produced them, which keeps the stream ordered and incremental.
    """

    name = "embedded"

    def __init__(
        self,
        *,
        engine_factory: Optional[EngineFactory] = None,
        engine_module: Optional[str] = None,
    ) -> None:
        if engine_factory is None and not engine_module:
            raise ConfigurationError(
                "The embedded engine needs an engine factory or an engine module name."
            )
        self._engine_module = engine_module
        self._factory = engine_factory
        self._logger = logging.getLogger(__name__)

    def _resolve_factory(self) -> EngineFactory:
        if self._factory is None:
            self._factory = load_engine_factory(self._engine_module)
        return self._factory

    async def invoke(self, request: CompilationRequest) -> AsyncIterator[LifecycleEvent]:
        try:
            factory = self._resolve_factory()
        except CompilerError as exc:
            yield Failed(exc)
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def _forward(event: LifecycleEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        def _run() -> bytes:
            try:
                return run_engine(
                    factory,
                    request,
                    on_stdout=lambda text: _forward(StandardOutput(text)),
                    on_stderr=lambda text: _forward(StandardError(text)),
                )
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _DONE)

        start = time.perf_counter()
        future = loop.run_in_executor(None, _run)
        try:
            yield Started()

            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event

            # Let diagnostics flushed late by the engine settle, then forward them.
            await asyncio.sleep(0)
            for event in _drain(queue):
                yield event
            try:
                artifact = await future
            except CompilerError as exc:
                self._logger.error("Embedded OpenSCAD run failed: %s", exc)
                yield Failed(exc)
                return
            except Exception as exc:  # pragma: no cover - run_engine wraps engine faults
                yield Failed(EngineError(f"OpenSCAD engine failed: {exc}"))
                return
        finally:
            future.add_done_callback(_retrieve_outcome)

        self._logger.info(
            "Embedded OpenSCAD finished in %.2fs (%d bytes)",
            time.perf_counter() - start,
            len(artifact),
        )
        yield Completed(artifact)

    async def get_version_text(self) -> str:
        factory = self._resolve_factory()
        text = await asyncio.to_thread(query_engine_version, factory)
        await asyncio.sleep(0)
        return text
