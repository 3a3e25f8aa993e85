"""
Background worker hosting an embedded OpenSCAD engine.

Reads one JSON request per line on stdin and answers with JSON lines on
stdout. The engine module is imported once and reused for every request,
which is the point of keeping this process alive between compilations.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

from pydantic import ValidationError

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
    from compiler.command import QUALITY_RENDER, CompilationRequest  # type: ignore[import]
    from compiler.engine import (  # type: ignore[import]
        EngineFactory,
        load_engine_factory,
        query_engine_version,
        run_engine,
    )
    from compiler.errors import CompilerError  # type: ignore[import]
    from compiler.protocol import WorkerRequest, WorkerResponse  # type: ignore[import]
else:
    from .command import QUALITY_RENDER, CompilationRequest
    from .engine import EngineFactory, load_engine_factory, query_engine_version, run_engine
    from .errors import CompilerError
    from .protocol import WorkerRequest, WorkerResponse

LOGGER = logging.getLogger("compiler.worker_runtime")


class WorkerRuntime:
    def __init__(self, engine_module: str, out: TextIO) -> None:
        self._engine_module = engine_module
        self._factory: Optional[EngineFactory] = None
        self._out = out

    def _send(self, response: WorkerResponse) -> None:
        self._out.write(response.to_line())
        self._out.flush()

    def _engine(self) -> EngineFactory:
        if self._factory is None:
            self._factory = load_engine_factory(self._engine_module)
        return self._factory

    def handle(self, request: WorkerRequest) -> None:
        message_id = request.id
        try:
            if request.type == "compile":
                compilation = CompilationRequest(
                    source_text=request.source_text,
                    quality=QUALITY_RENDER,
                    output_format=request.output_format,
                    extra_args=request.extra_arguments,
                )
                artifact = run_engine(
                    self._engine(),
                    compilation,
                    on_stdout=lambda text: self._send(
                        WorkerResponse(id=message_id, type="stdout", data=text)
                    ),
                    on_stderr=lambda text: self._send(
                        WorkerResponse(id=message_id, type="stderr", data=text)
                    ),
                )
                self._send(WorkerResponse.artifact(message_id, artifact))
            elif request.type == "getVersion":
                version = query_engine_version(self._engine())
                self._send(WorkerResponse(id=message_id, type="version", data=version))
            else:
                raise CompilerError(f"Unknown message type: {request.type}")
        except CompilerError as exc:
            self._send(WorkerResponse(id=message_id, type="error", error=str(exc)))

    def serve(self, lines: TextIO) -> None:
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                request = WorkerRequest.model_validate_json(line)
            except ValidationError as exc:
                LOGGER.error("Dropping malformed request: %s", exc)
                continue
            self.handle(request)


def main() -> int:
    parser = argparse.ArgumentParser(description="Background OpenSCAD compilation worker.")
    parser.add_argument(
        "--engine-module",
        type=str,
        required=True,
        help="Importable module exposing create_engine(print, print_err).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    # Anything the engine prints directly must not corrupt the protocol stream.
    protocol_out = sys.stdout
    sys.stdout = sys.stderr
    WorkerRuntime(args.engine_module, protocol_out).serve(sys.stdin)
    return 0


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    raise SystemExit(main())
