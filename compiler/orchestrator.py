"""
Unified compilation interface over the three OpenSCAD backends.

Typical usage:

>>> from compiler import Compiler, CompilerConfig
>>> async with Compiler(CompilerConfig(engine="subprocess")) as compiler:
...     result = await compiler.compile_result("cube(10);", mode="full")
...     dims = await compiler.get_dimensions("cube(10);")
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import (
    AsyncIterator,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from utils.versioning import extract_date_version

from .base import BaseBackend
from .command import (
    AUTOCENTER_FLAG,
    QUALITIES,
    QUALITY_RENDER,
    VIEWALL_FLAG,
    CompilationRequest,
    camera_flag,
    imgsize_flag,
)
from .embedded_backend import EmbeddedBackend
from .engine import EngineFactory
from .errors import AnalysisError, CompilerError, ConfigurationError
from .events import CompilationResult, LifecycleEvent, collect_events
from .mesh_analysis import DimensionReport, analyze_mesh
from .subprocess_backend import DEFAULT_EXECUTABLE, SubprocessBackend
from .worker_backend import (
    DEFAULT_COMPILE_TIMEOUT,
    DEFAULT_VERSION_TIMEOUT,
    WorkerBackend,
)

ENGINES = ("embedded", "subprocess", "worker")
FULL_MODE = "full"
SCENE_GRAPH_FORMAT = "csg"
MESH_FORMAT = "stl"
PREVIEW_FORMAT = "png"


def _freeze_args(args: Optional[Mapping[str, Sequence[str]]]) -> Mapping[str, Tuple[str, ...]]:
    return MappingProxyType({mode: tuple(values) for mode, values in (args or {}).items()})


@dataclass(frozen=True)
class CompilerConfig:
    """Construction-time configuration for :class:`Compiler`."""

    engine: str = "subprocess"
    executable_path: str = DEFAULT_EXECUTABLE
    engine_module: Optional[str] = None
    output_format: str = "stl"
    quality: str = QUALITY_RENDER
    engine_version: str = ""
    args: Mapping[str, Sequence[str]] = field(default_factory=dict)
    temp_dir: Optional[Path] = None
    compile_timeout: float = DEFAULT_COMPILE_TIMEOUT
    version_timeout: float = DEFAULT_VERSION_TIMEOUT
    worker_command: Optional[Sequence[str]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", _freeze_args(self.args))
        if self.worker_command is not None:
            object.__setattr__(self, "worker_command", tuple(self.worker_command))

    @classmethod
    def from_env(cls, **overrides) -> "CompilerConfig":
        """Build a config from ``OPENSCAD_*`` environment variables plus overrides."""
        values: Dict[str, object] = {}
        if os.getenv("OPENSCAD_ENGINE"):
            values["engine"] = os.environ["OPENSCAD_ENGINE"]
        if os.getenv("OPENSCAD_PATH"):
            values["executable_path"] = os.environ["OPENSCAD_PATH"]
        if os.getenv("OPENSCAD_ENGINE_MODULE"):
            values["engine_module"] = os.environ["OPENSCAD_ENGINE_MODULE"]
        if os.getenv("OPENSCAD_VERSION"):
            values["engine_version"] = os.environ["OPENSCAD_VERSION"]
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]


@dataclass(frozen=True)
class CompileOptions:
    """Per-call settings; derived operations build their own instead of mutating the compiler."""

    output_format: str
    quality: str
    extra_args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PreviewOptions:
    width: int = 800
    height: int = 600
    camera: Optional[str] = None
    autocenter: bool = True
    viewall: bool = True

    def flags(self) -> List[str]:
        flags: List[str] = []
        if self.autocenter:
            flags.append(AUTOCENTER_FLAG)
        if self.viewall:
            flags.append(VIEWALL_FLAG)
        flags.append(imgsize_flag(self.width, self.height))
        if self.camera:
            flags.append(camera_flag(self.camera))
        return flags


def _build_backend(
    config: CompilerConfig, engine_factory: Optional[EngineFactory]
) -> BaseBackend:
    engine = config.engine.strip().lower()
    if engine == "subprocess":
        return SubprocessBackend(
            executable_path=config.executable_path, temp_dir=config.temp_dir
        )
    if engine == "embedded":
        return EmbeddedBackend(
            engine_factory=engine_factory, engine_module=config.engine_module
        )
    if engine == "worker":
        return WorkerBackend(
            engine_module=config.engine_module,
            command=config.worker_command,
            compile_timeout=config.compile_timeout,
            version_timeout=config.version_timeout,
        )
    raise ConfigurationError(
        f"Unsupported engine '{config.engine}'. Expected one of: {', '.join(ENGINES)}."
    )


class Compiler:
    """Compiles OpenSCAD source through the backend selected at construction."""

    def __init__(
        self,
        config: Optional[CompilerConfig] = None,
        *,
        engine_factory: Optional[EngineFactory] = None,
        mesh_analyzer: Callable[[bytes, str], DimensionReport] = analyze_mesh,
    ) -> None:
        self._config = config or CompilerConfig()
        if self._config.quality not in QUALITIES:
            raise ConfigurationError(
                f"Unsupported quality '{self._config.quality}'. Expected one of: {', '.join(QUALITIES)}."
            )
        self._backend = _build_backend(self._config, engine_factory)
        self._mesh_analyzer = mesh_analyzer
        self._logger = logging.getLogger(__name__)

    @property
    def config(self) -> CompilerConfig:
        return self._config

    @property
    def backend(self) -> BaseBackend:
        return self._backend

    def options_for(self, mode: str = "fast", *, quality: Optional[str] = None) -> CompileOptions:
        return CompileOptions(
            output_format=self._config.output_format,
            quality=quality or self._config.quality,
            extra_args=tuple(self._config.args.get(mode, ())),
        )

    def compile(
        self,
        source: str,
        mode: str = "fast",
        *,
        quality: Optional[str] = None,
    ) -> AsyncIterator[LifecycleEvent]:
        """Stream the lifecycle of compiling ``source`` with the extra args of ``mode``."""
        return self._compile_with(source, self.options_for(mode, quality=quality))

    def _compile_with(self, source: str, options: CompileOptions) -> AsyncIterator[LifecycleEvent]:
        request = CompilationRequest(
            source_text=source,
            quality=options.quality,
            output_format=options.output_format,
            engine_version=self._config.engine_version,
            extra_args=options.extra_args,
        )
        self._logger.debug(
            "Compiling via %s: format=%s quality=%s args=%s",
            self._backend.name,
            options.output_format,
            options.quality,
            list(options.extra_args),
        )
        return self._backend.invoke(request)

    async def compile_result(
        self,
        source: str,
        mode: str = "fast",
        *,
        quality: Optional[str] = None,
        on_event: Optional[Callable[[LifecycleEvent], None]] = None,
    ) -> CompilationResult:
        return await collect_events(
            self.compile(source, mode, quality=quality), on_event=on_event
        )

    async def get_version(self) -> Optional[str]:
        """Return the engine's date-style version, or ``None`` when it cannot be determined."""
        try:
            raw = await self._backend.get_version_text()
        except CompilerError as exc:
            self._logger.warning("Could not query %s engine version: %s", self._backend.name, exc)
            return None
        return extract_date_version(raw)

    async def _run_full(self, source: str, options: CompileOptions) -> bytes:
        result = await collect_events(self._compile_with(source, options))
        if not result.success:
            error = result.error
            if error.stderr is None and result.stderr:
                # Backends may share error instances; attach this call's stderr to a copy.
                attached = copy.copy(error)
                attached.stderr = result.stderr
                raise attached from error
            raise error
        return result.artifact

    def _full_options(self, output_format: str, *extra: str) -> CompileOptions:
        base = self.options_for(FULL_MODE, quality=QUALITY_RENDER)
        return dataclasses.replace(
            base, output_format=output_format, extra_args=base.extra_args + tuple(extra)
        )

    async def get_scene_graph(self, source: str) -> bytes:
        """Return the engine's CSG scene-graph dump of ``source`` unmodified."""
        return await self._run_full(source, self._full_options(SCENE_GRAPH_FORMAT))

    async def get_dimensions(self, source: str) -> DimensionReport:
        artifact = await self._run_full(source, self._full_options(MESH_FORMAT))
        try:
            return self._mesh_analyzer(artifact, MESH_FORMAT)
        except AnalysisError:
            raise
        except Exception as exc:
            raise AnalysisError(f"failed to analyze mesh data: {exc}") from exc

    async def get_preview(
        self, source: str, options: Optional[PreviewOptions] = None
    ) -> bytes:
        """Render ``source`` to PNG, framed by the preview flags merged onto the full args."""
        preview = options or PreviewOptions()
        return await self._run_full(
            source, self._full_options(PREVIEW_FORMAT, *preview.flags())
        )

    async def aclose(self) -> None:
        await self._backend.aclose()

    async def __aenter__(self) -> "Compiler":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
