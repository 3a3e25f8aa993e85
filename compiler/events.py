from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Union

from .errors import CompilerError, EngineError


@dataclass(frozen=True)
class Started:
    """The engine has begun working on the request."""


@dataclass(frozen=True)
class StandardOutput:
    text: str


@dataclass(frozen=True)
class StandardError:
    text: str


@dataclass(frozen=True)
class Completed:
    artifact: bytes


@dataclass(frozen=True)
class Failed:
    error: CompilerError


LifecycleEvent = Union[Started, StandardOutput, StandardError, Completed, Failed]
TERMINAL_EVENTS = (Completed, Failed)


def is_terminal(event: LifecycleEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


@dataclass
class CompilationResult:
    """Outcome of draining one compilation event stream."""

    success: bool
    artifact: Optional[bytes] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[CompilerError] = None

    def as_dict(self) -> dict:
        """Return a JSON-serialisable summary (the artifact is reported by size only)."""
        return {
            "success": self.success,
            "artifact_size": len(self.artifact) if self.artifact is not None else None,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "error": str(self.error) if self.error else None,
        }


async def collect_events(
    events: AsyncIterator[LifecycleEvent],
    *,
    on_event: Optional[Callable[[LifecycleEvent], None]] = None,
) -> CompilationResult:
    """
    Drain ``events`` into a :class:`CompilationResult`.

    Output text is accumulated as history; it stays in the result even when
    the stream ends in ``Failed``. A stream that ends without a terminal
    event is reported as an engine failure.
    """
    stdout_parts: list[str] = []
    stderr_parts: list[str] = []
    terminal: Optional[LifecycleEvent] = None
    # Drain to the end so the backend's cleanup runs before we return.
    async for event in events:
        if on_event is not None:
            on_event(event)
        if terminal is not None:
            continue
        if isinstance(event, StandardOutput):
            stdout_parts.append(event.text)
        elif isinstance(event, StandardError):
            stderr_parts.append(event.text)
        elif is_terminal(event):
            terminal = event

    stdout = "".join(stdout_parts)
    stderr = "".join(stderr_parts)
    if isinstance(terminal, Completed):
        return CompilationResult(
            success=True, artifact=terminal.artifact, stdout=stdout, stderr=stderr
        )
    error = (
        terminal.error
        if isinstance(terminal, Failed)
        else EngineError("Compilation ended without a result")
    )
    return CompilationResult(success=False, stdout=stdout, stderr=stderr, error=error)
