from __future__ import annotations

import asyncio
import codecs
import logging
import secrets
import tempfile
import time
from pathlib import Path
from typing import AsyncIterator, Optional

from .base import BaseBackend
from .command import VERSION_FLAG, CompilationRequest, build_arguments
from .errors import ArtifactReadError, EngineError, LaunchError
from .events import (
    Completed,
    Failed,
    LifecycleEvent,
    StandardError,
    StandardOutput,
    Started,
)

DEFAULT_EXECUTABLE = "openscad"
TEMP_PREFIX = "openscad"
_READ_CHUNK = 4096


def temporary_paths(
    temp_dir: Path, output_format: str, *, prefix: str = TEMP_PREFIX
) -> tuple[Path, Path]:
    """Return a fresh ``(input, output)`` pair sharing one random identifier."""
    token = secrets.token_hex(8)
    return (
        temp_dir / f"{prefix}-input-{token}.scad",
        temp_dir / f"{prefix}-output-{token}.{output_format}",
    )


async def _pump(
    stream: asyncio.StreamReader, kind: str, queue: "asyncio.Queue[tuple[str, Optional[str]]]"
) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            tail = decoder.decode(b"", final=True)
            if tail:
                await queue.put((kind, tail))
            await queue.put((kind, None))
            return
        text = decoder.decode(chunk)
        if text:
            await queue.put((kind, text))


class SubprocessBackend(BaseBackend):
    """
    Runs the native OpenSCAD executable, one process per compilation.

    The source is written to a uniquely named file in the temp directory, the
    executable renders it to a sibling output file, and the output bytes are
    read back. Both files are removed on every exit path.
    """

    name = "subprocess"

    def __init__(
        self,
        *,
        executable_path: str = DEFAULT_EXECUTABLE,
        temp_dir: Optional[Path] = None,
    ) -> None:
        self._executable = executable_path
        self._temp_dir = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())
        self._logger = logging.getLogger(__name__)

    @property
    def executable_path(self) -> str:
        return self._executable

    async def invoke(self, request: CompilationRequest) -> AsyncIterator[LifecycleEvent]:
        input_path, output_path = temporary_paths(self._temp_dir, request.output_format)
        process: Optional[asyncio.subprocess.Process] = None
        try:
            try:
                input_path.write_text(request.source_text, encoding="utf-8")
            except OSError as exc:
                self._logger.error("Failed to write OpenSCAD input %s: %s", input_path, exc)
                self._cleanup(input_path, output_path)
                yield Failed(LaunchError(f"Failed to write input file {input_path}: {exc}"))
                return

            args = build_arguments(
                request, input_path=str(input_path), output_path=str(output_path)
            )
            self._logger.info("Launching %s %s", self._executable, " ".join(args))
            start = time.perf_counter()
            try:
                process = await asyncio.create_subprocess_exec(
                    self._executable,
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                self._logger.error("Failed to launch %s: %s", self._executable, exc)
                self._cleanup(input_path, output_path)
                yield Failed(
                    LaunchError(
                        f"Failed to launch OpenSCAD executable '{self._executable}': {exc}"
                    )
                )
                return

            yield Started()

            queue: asyncio.Queue[tuple[str, Optional[str]]] = asyncio.Queue()
            pumps = [
                asyncio.create_task(_pump(process.stdout, "stdout", queue)),
                asyncio.create_task(_pump(process.stderr, "stderr", queue)),
            ]
            stderr_parts: list[str] = []
            open_streams = len(pumps)
            try:
                while open_streams:
                    kind, text = await queue.get()
                    if text is None:
                        open_streams -= 1
                    elif kind == "stdout":
                        yield StandardOutput(text)
                    else:
                        stderr_parts.append(text)
                        yield StandardError(text)
            finally:
                for pump in pumps:
                    pump.cancel()

            exit_code = await process.wait()
            self._logger.info(
                "OpenSCAD finished in %.2fs with exit code %d",
                time.perf_counter() - start,
                exit_code,
            )
            if exit_code != 0:
                stderr_text = "".join(stderr_parts)
                self._logger.error("OpenSCAD failed. stderr=%s", stderr_text)
                self._cleanup(input_path, output_path)
                yield Failed(
                    EngineError(
                        f"OpenSCAD process exited with code {exit_code}",
                        exit_code=exit_code,
                        stderr=stderr_text,
                    )
                )
                return

            try:
                artifact = output_path.read_bytes()
            except OSError as exc:
                self._cleanup(input_path, output_path)
                yield Failed(
                    ArtifactReadError(f"Failed to read OpenSCAD output {output_path}: {exc}")
                )
                return
            self._cleanup(input_path, output_path)
            yield Completed(artifact)
        finally:
            if process is not None and process.returncode is None:
                self._logger.warning("Killing abandoned OpenSCAD process %s", process.pid)
                process.kill()
                await process.wait()
            self._cleanup(input_path, output_path)

    def _cleanup(self, *paths: Path) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                self._logger.warning("Failed to remove temporary file %s: %s", path, exc)

    async def get_version_text(self) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self._executable,
                VERSION_FLAG,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise LaunchError(
                f"Failed to launch OpenSCAD executable '{self._executable}': {exc}"
            ) from exc
        stdout, stderr = await process.communicate()
        # OpenSCAD prints its version banner on stderr.
        return stdout.decode("utf-8", errors="replace") + stderr.decode(
            "utf-8", errors="replace"
        )
