"""
Run OpenSCAD through interchangeable backends and stream the results.

Typical usage:

>>> from compiler import Compiler, CompilerConfig
>>> compiler = Compiler(CompilerConfig(engine="subprocess", args={"full": ["--backend=manifold"]}))
>>> async for event in compiler.compile("cube(10);", mode="full"):
...     print(event)
"""

from .base import BaseBackend
from .command import CompilationRequest, build_arguments
from .embedded_backend import EmbeddedBackend
from .errors import (
    AnalysisError,
    ArtifactReadError,
    CompileTimeoutError,
    CompilerError,
    ConfigurationError,
    EngineError,
    LaunchError,
)
from .events import (
    CompilationResult,
    Completed,
    Failed,
    LifecycleEvent,
    StandardError,
    StandardOutput,
    Started,
    collect_events,
)
from .mesh_analysis import DimensionReport, analyze_mesh
from .orchestrator import Compiler, CompilerConfig, CompileOptions, PreviewOptions
from .subprocess_backend import SubprocessBackend
from .worker_backend import WorkerBackend

__all__ = [
    "AnalysisError",
    "ArtifactReadError",
    "BaseBackend",
    "CompilationRequest",
    "CompilationResult",
    "CompileOptions",
    "CompileTimeoutError",
    "Compiler",
    "CompilerConfig",
    "CompilerError",
    "Completed",
    "ConfigurationError",
    "DimensionReport",
    "EmbeddedBackend",
    "EngineError",
    "Failed",
    "LaunchError",
    "LifecycleEvent",
    "PreviewOptions",
    "StandardError",
    "StandardOutput",
    "Started",
    "SubprocessBackend",
    "WorkerBackend",
    "analyze_mesh",
    "build_arguments",
    "collect_events",
]
