from __future__ import annotations

import abc
from typing import AsyncIterator

from .command import CompilationRequest
from .events import LifecycleEvent


class BaseBackend(abc.ABC):
    """Abstract base class implemented by every way of running the engine."""

    name: str = "base"

    @abc.abstractmethod
    def invoke(self, request: CompilationRequest) -> AsyncIterator[LifecycleEvent]:
        """
        Compile ``request`` and stream its lifecycle.

        Parameters
        ----------
        request:
            Source text, quality, output format, engine version hint and the
            caller's extra engine arguments.

        Returns
        -------
        AsyncIterator[LifecycleEvent]
            ``Started`` once the engine is running, any number of
            ``StandardOutput``/``StandardError`` chunks in arrival order, and
            exactly one ``Completed`` or ``Failed`` as the final event. Failures
            never escape as exceptions from iteration.
        """

    @abc.abstractmethod
    async def get_version_text(self) -> str:
        """Return whatever the engine prints for ``--version``.

        Raises a :class:`~compiler.errors.CompilerError` when the engine
        cannot be queried.
        """

    async def aclose(self) -> None:
        """Release long-lived resources. Per-invocation backends hold none."""
        return None
