"""Command-line arguments for the OpenSCAD engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from utils.versioning import is_legacy_version

QUALITY_PREVIEW = "preview"
QUALITY_RENDER = "render"
QUALITIES = (QUALITY_PREVIEW, QUALITY_RENDER)

LEGACY_PREVIEW_FLAG = "--preview"
FAST_PREVIEW_FLAG = "--preview=fast"
VERSION_FLAG = "--version"

MANIFOLD_BACKEND_FLAG = "--backend=manifold"
LAZY_UNION_FLAG = "--enable=lazy-union"
ROOF_FLAG = "--enable=roof"
FAST_CSG_FLAG = "--enable=fast-csg"

AUTOCENTER_FLAG = "--autocenter"
VIEWALL_FLAG = "--viewall"

# Optional acceleration sets keyed by compile mode.
DEFAULT_MODE_ARGS = {
    "fast": (MANIFOLD_BACKEND_FLAG, LAZY_UNION_FLAG),
    "full": (MANIFOLD_BACKEND_FLAG, LAZY_UNION_FLAG, ROOF_FLAG),
}


def imgsize_flag(width: int, height: int) -> str:
    return f"--imgsize={int(width)},{int(height)}"


def camera_flag(camera: str) -> str:
    return f"--camera={camera}"


@dataclass(frozen=True)
class CompilationRequest:
    """Everything a backend needs to run one compilation."""

    source_text: str
    quality: str = QUALITY_RENDER
    output_format: str = "stl"
    engine_version: str = ""
    extra_args: Sequence[str] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.quality not in QUALITIES:
            raise ValueError(
                f"Unsupported quality '{self.quality}'. Expected one of: {', '.join(QUALITIES)}."
            )
        # Freeze caller lists so the request cannot change after construction.
        object.__setattr__(self, "extra_args", tuple(self.extra_args))


def quality_flags(quality: str, engine_version: str) -> list[str]:
    """Return the draft-rendering flag for ``quality`` on the given engine version."""
    if quality == QUALITY_RENDER:
        return []
    if quality == QUALITY_PREVIEW:
        if is_legacy_version(engine_version):
            return [LEGACY_PREVIEW_FLAG]
        return [FAST_PREVIEW_FLAG]
    raise ValueError(f"Unsupported quality '{quality}'.")


def build_arguments(
    request: CompilationRequest,
    *,
    input_path: str,
    output_path: str,
) -> list[str]:
    """
    Build the engine invocation for ``request``.

    Parameters
    ----------
    request:
        The compilation being run. Only quality, engine version and the extra
        arguments influence the result; the source text is never inspected.
    input_path, output_path:
        Real file paths for the executable, or virtual paths for an embedded
        engine's in-memory filesystem.

    Returns
    -------
    list[str]
        ``<input> -o <output>``, then the preview flag (if any), then the
        caller's extra arguments in order.
    """
    args = [str(input_path), "-o", str(output_path)]
    args.extend(quality_flags(request.quality, request.engine_version))
    args.extend(request.extra_args)
    return args
