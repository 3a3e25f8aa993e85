from __future__ import annotations

import asyncio
import itertools
import logging
import sys
import time
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Sequence

from pydantic import ValidationError

from .base import BaseBackend
from .command import CompilationRequest, quality_flags
from .errors import CompileTimeoutError, CompilerError, ConfigurationError, EngineError
from .events import (
    Completed,
    Failed,
    LifecycleEvent,
    StandardError,
    StandardOutput,
    Started,
)
from .protocol import RequestType, WorkerRequest, WorkerResponse

DEFAULT_COMPILE_TIMEOUT = 60.0
DEFAULT_VERSION_TIMEOUT = 10.0
_STREAM_LIMIT = 64 * 1024 * 1024


def default_worker_command(engine_module: str) -> list[str]:
    return [
        sys.executable,
        str(Path(__file__).with_name("worker_runtime.py")),
        "--engine-module",
        engine_module,
    ]


class _WorkerFault:
    """Marker queued for every pending request when the worker goes away."""

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        self.message = message
        self.exit_code = exit_code

    def error(self, stderr: Optional[str] = None) -> EngineError:
        # Each request gets its own instance so diagnostics never leak between calls.
        return EngineError(self.message, exit_code=self.exit_code, stderr=stderr)


class WorkerBackend(BaseBackend):
    """
    Runs compilations in one long-lived background worker process.

    The worker is spawned on first use and shared by every invocation made
    through this backend. Requests carry a correlation id; a reader task routes
    each response line to the queue registered for that id. Requests that
    outlive their timeout are dropped from the pending table, so any late
    answer for them is discarded.

    If the worker dies or writes an unreadable line, every pending request
    fails with the fault and later requests fail immediately until
    :meth:`reset` is called.
    """

    name = "worker"

    def __init__(
        self,
        *,
        engine_module: Optional[str] = None,
        command: Optional[Sequence[str]] = None,
        compile_timeout: float = DEFAULT_COMPILE_TIMEOUT,
        version_timeout: float = DEFAULT_VERSION_TIMEOUT,
    ) -> None:
        if command is None and not engine_module:
            raise ConfigurationError(
                "The worker engine needs an engine module name or an explicit worker command."
            )
        self._command = list(command) if command else default_worker_command(engine_module)
        self._compile_timeout = compile_timeout
        self._version_timeout = version_timeout
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Queue] = {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._fault: Optional[CompilerError] = None
        self._start_lock = asyncio.Lock()
        self._logger = logging.getLogger(__name__)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _ensure_worker(self) -> asyncio.subprocess.Process:
        async with self._start_lock:
            if self._fault is not None:
                raise EngineError(
                    f"OpenSCAD worker is unavailable ({self._fault}); reset the backend to restart it"
                )
            if self._process is None:
                self._logger.info("Starting OpenSCAD worker: %s", " ".join(self._command))
                try:
                    self._process = await asyncio.create_subprocess_exec(
                        *self._command,
                        stdin=asyncio.subprocess.PIPE,
                        stdout=asyncio.subprocess.PIPE,
                        limit=_STREAM_LIMIT,
                    )
                except OSError as exc:
                    raise EngineError(f"Failed to start OpenSCAD worker: {exc}") from exc
                self._reader = asyncio.create_task(self._read_loop(self._process))
            return self._process

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                try:
                    response = WorkerResponse.model_validate_json(line)
                except ValidationError as exc:
                    self._fail_all(f"OpenSCAD worker sent an unreadable message: {exc}")
                    return
                queue = self._pending.get(response.id)
                if queue is None:
                    self._logger.debug(
                        "Dropping %s message for expired request %d", response.type, response.id
                    )
                    continue
                if response.is_terminal:
                    del self._pending[response.id]
                queue.put_nowait(response)
        except (OSError, ValueError) as exc:
            self._fail_all(f"OpenSCAD worker stream failed: {exc}")
            return
        exit_code = await process.wait()
        self._fail_all(f"OpenSCAD worker exited with code {exit_code}", exit_code=exit_code)

    def _fail_all(self, message: str, exit_code: Optional[int] = None) -> None:
        self._logger.error("OpenSCAD worker fault: %s (%d pending)", message, len(self._pending))
        self._fault = EngineError(message, exit_code=exit_code)
        pending, self._pending = self._pending, {}
        for queue in pending.values():
            queue.put_nowait(_WorkerFault(message, exit_code))

    async def _next_item(self, queue: asyncio.Queue, deadline: float):
        """Return the next response, waiting against ``deadline`` only while none has arrived."""
        try:
            return queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        remaining = deadline - asyncio.get_running_loop().time()
        return await asyncio.wait_for(queue.get(), timeout=max(remaining, 0))

    async def _post(self, request: WorkerRequest) -> asyncio.Queue:
        process = await self._ensure_worker()
        queue: asyncio.Queue = asyncio.Queue()
        self._pending[request.id] = queue
        try:
            process.stdin.write(request.to_line().encode("utf-8"))
            await process.stdin.drain()
        except (OSError, RuntimeError) as exc:
            self._pending.pop(request.id, None)
            raise EngineError(f"Failed to send request to OpenSCAD worker: {exc}") from exc
        return queue

    def _new_request(self, kind: RequestType, **fields) -> WorkerRequest:
        return WorkerRequest(id=next(self._ids), type=kind, **fields)

    async def invoke(self, request: CompilationRequest) -> AsyncIterator[LifecycleEvent]:
        message = self._new_request(
            "compile",
            source_text=request.source_text,
            output_format=request.output_format,
            extra_arguments=[
                *quality_flags(request.quality, request.engine_version),
                *request.extra_args,
            ],
        )
        try:
            queue = await self._post(message)
        except CompilerError as exc:
            yield Failed(exc)
            return

        loop = asyncio.get_running_loop()
        start = time.perf_counter()
        deadline = loop.time() + self._compile_timeout
        stderr_parts: list[str] = []
        try:
            yield Started()
            while True:
                try:
                    item = await self._next_item(queue, deadline)
                except asyncio.TimeoutError:
                    self._pending.pop(message.id, None)
                    self._logger.error(
                        "Request %d timed out after %.1fs", message.id, self._compile_timeout
                    )
                    yield Failed(
                        CompileTimeoutError(
                            f"Compilation timed out after {self._compile_timeout:g}s",
                            stderr="".join(stderr_parts),
                        )
                    )
                    return
                if isinstance(item, _WorkerFault):
                    yield Failed(item.error(stderr="".join(stderr_parts)))
                    return
                if item.type == "stdout":
                    yield StandardOutput(item.data or "")
                elif item.type == "stderr":
                    stderr_parts.append(item.data or "")
                    yield StandardError(item.data or "")
                elif item.type == "done":
                    artifact = item.artifact_bytes()
                    self._logger.info(
                        "Request %d finished in %.2fs (%d bytes)",
                        message.id,
                        time.perf_counter() - start,
                        len(artifact),
                    )
                    yield Completed(artifact)
                    return
                elif item.type == "error":
                    yield Failed(
                        EngineError(item.error or "Unknown worker error", stderr="".join(stderr_parts))
                    )
                    return
                else:
                    self._logger.warning(
                        "Unexpected %s message for compile request %d", item.type, message.id
                    )
        finally:
            self._pending.pop(message.id, None)

    async def get_version_text(self) -> str:
        message = self._new_request("getVersion")
        queue = await self._post(message)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._version_timeout
        try:
            while True:
                try:
                    item = await self._next_item(queue, deadline)
                except asyncio.TimeoutError as exc:
                    raise CompileTimeoutError(
                        f"Version request timed out after {self._version_timeout:g}s"
                    ) from exc
                if isinstance(item, _WorkerFault):
                    raise item.error()
                if item.type == "version":
                    return item.data or ""
                if item.type == "error":
                    raise EngineError(item.error or "Unknown worker error")
        finally:
            self._pending.pop(message.id, None)

    async def reset(self) -> None:
        """Tear down the worker so the next request starts a fresh one."""
        process, reader = self._process, self._reader
        self._process = None
        self._reader = None
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        if self._pending:
            self._fail_all("OpenSCAD worker was shut down")
        self._fault = None

    async def aclose(self) -> None:
        await self.reset()
