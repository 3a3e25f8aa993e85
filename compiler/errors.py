from __future__ import annotations

from typing import Optional


class CompilerError(Exception):
    """Base class for every failure reported by a compilation backend."""

    def __init__(self, message: str, *, stderr: Optional[str] = None) -> None:
        super().__init__(message)
        self.stderr = stderr

    def __str__(self) -> str:
        message = super().__str__()
        if self.stderr and self.stderr.strip():
            return f"{message}\n{self.stderr.strip()}"
        return message


class ConfigurationError(CompilerError, ValueError):
    """The compiler was configured with an unusable engine selection."""


class LaunchError(CompilerError):
    """The engine could not be started (missing executable, unwritable input)."""


class EngineError(CompilerError):
    """The engine ran but reported failure."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message, stderr=stderr)
        self.exit_code = exit_code


class ArtifactReadError(CompilerError):
    """The engine finished but its output could not be read back."""


class CompileTimeoutError(CompilerError, TimeoutError):
    """A background-worker request did not answer in time.

    Raised for every worker request kind, compilations and version queries
    alike; the message names the request that expired.
    """


class AnalysisError(CompilerError):
    """The mesh-analysis library rejected a compiled artifact."""
