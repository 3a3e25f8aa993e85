"""
Contract and synchronous run loop for an embeddable OpenSCAD engine.

An embeddable engine is any Python object exposing a small in-memory
filesystem and a ``main``-style entry point, mirroring how WebAssembly builds
of OpenSCAD are driven. Engines are produced by a factory that receives the
line callbacks used for the engine's standard output and error streams.
"""

from __future__ import annotations

import importlib
from typing import Callable, Optional, Protocol, Sequence, Union

from .command import VERSION_FLAG, CompilationRequest, build_arguments
from .errors import ArtifactReadError, ConfigurationError, EngineError

VIRTUAL_INPUT_PATH = "/input.scad"

LineCallback = Callable[[str], None]


class EngineInstance(Protocol):
    def write_file(self, path: str, data: str) -> None:
        ...

    def read_file(self, path: str) -> Union[bytes, str]:
        ...

    def call_main(self, args: Sequence[str]) -> Optional[int]:
        ...


EngineFactory = Callable[[LineCallback, LineCallback], EngineInstance]


def virtual_output_path(output_format: str) -> str:
    return f"/output.{output_format}"


def load_engine_factory(module_name: str) -> EngineFactory:
    """
    Import ``module_name`` and return its ``create_engine`` factory.

    The module is expected to be installed separately; nothing here knows
    how the engine itself is built.
    """
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(
            f"Unable to import OpenSCAD engine module '{module_name}': {exc}"
        ) from exc
    factory = getattr(module, "create_engine", None)
    if factory is None or not callable(factory):
        raise ConfigurationError(
            f"Engine module '{module_name}' must expose a callable `create_engine(print, print_err)`."
        )
    return factory


def as_bytes(output: object) -> bytes:
    if isinstance(output, bytes):
        return output
    if isinstance(output, (bytearray, memoryview)):
        return bytes(output)
    if isinstance(output, str):
        return output.encode("utf-8")
    raise TypeError(f"Engine returned unsupported output type {type(output).__name__}")


def run_engine(
    factory: EngineFactory,
    request: CompilationRequest,
    *,
    on_stdout: LineCallback,
    on_stderr: LineCallback,
) -> bytes:
    """
    Run one compilation on a fresh engine instance and return the artifact.

    Engine callbacks deliver whole lines without terminators, so a newline is
    appended before forwarding. Every failure is reported as a
    :class:`~compiler.errors.CompilerError`.
    """
    stderr_lines: list[str] = []

    def _print_err(text: str) -> None:
        stderr_lines.append(text)
        on_stderr(text + "\n")

    def _print(text: str) -> None:
        on_stdout(text + "\n")

    output_path = virtual_output_path(request.output_format)
    try:
        instance = factory(_print, _print_err)
        instance.write_file(VIRTUAL_INPUT_PATH, request.source_text)
        exit_code = instance.call_main(
            build_arguments(request, input_path=VIRTUAL_INPUT_PATH, output_path=output_path)
        )
    except Exception as exc:
        raise EngineError(
            f"OpenSCAD engine failed: {exc}", stderr="\n".join(stderr_lines)
        ) from exc

    if exit_code:
        raise EngineError(
            f"OpenSCAD engine exited with code {exit_code}",
            exit_code=exit_code,
            stderr="\n".join(stderr_lines),
        )

    try:
        return as_bytes(instance.read_file(output_path))
    except Exception as exc:
        raise ArtifactReadError(
            f"Failed to read engine output {output_path}: {exc}",
            stderr="\n".join(stderr_lines),
        ) from exc


def query_engine_version(factory: EngineFactory) -> str:
    """Run ``--version`` on a fresh engine instance and return everything it printed."""
    captured: list[str] = []

    def _capture(text: str) -> None:
        captured.append(text + "\n")

    try:
        instance = factory(_capture, _capture)
        instance.call_main([VERSION_FLAG])
    except Exception as exc:
        raise EngineError(f"Failed to get engine version: {exc}") from exc
    return "".join(captured)
