from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import trimesh

from .errors import AnalysisError

Vector3 = Tuple[float, float, float]


@dataclass(frozen=True)
class DimensionReport:
    """Physical dimensions of a compiled mesh, in model units."""

    volume: float
    surface_area: float
    bounding_box: Tuple[Vector3, Vector3]
    center_of_mass: Vector3

    @property
    def extents(self) -> Vector3:
        low, high = self.bounding_box
        return tuple(float(b - a) for a, b in zip(low, high))  # type: ignore[return-value]

    def as_dict(self) -> dict:
        return {
            "volume": self.volume,
            "surface_area": self.surface_area,
            "bounding_box": {"min": list(self.bounding_box[0]), "max": list(self.bounding_box[1])},
            "center_of_mass": list(self.center_of_mass),
        }


def _vector(values) -> Vector3:
    array = np.asarray(values, dtype=float).reshape(3)
    return (float(array[0]), float(array[1]), float(array[2]))


def load_mesh(data: bytes, file_type: str = "stl") -> trimesh.Trimesh:
    """Parse mesh bytes, flattening multi-body scenes into a single mesh."""
    loaded = trimesh.load(io.BytesIO(data), file_type=file_type)
    if isinstance(loaded, trimesh.Scene):
        meshes = [g for g in loaded.geometry.values() if isinstance(g, trimesh.Trimesh)]
        if not meshes:
            raise ValueError("Mesh scene contains no triangle geometry.")
        return trimesh.util.concatenate(meshes)
    if not isinstance(loaded, trimesh.Trimesh):
        raise ValueError(f"Unsupported mesh object {type(loaded).__name__}.")
    return loaded


def analyze_mesh(data: bytes, file_type: str = "stl") -> DimensionReport:
    """
    Measure volume, surface area, bounds and center of mass of a mesh artifact.

    Any failure inside trimesh is reported as
    :class:`~compiler.errors.AnalysisError` so callers never see parser
    internals.
    """
    if not data:
        raise AnalysisError("failed to analyze mesh data: artifact is empty")
    try:
        mesh = load_mesh(data, file_type)
        if mesh.is_empty:
            raise ValueError("mesh has no faces")
        bounds = np.asarray(mesh.bounds, dtype=float)
        return DimensionReport(
            volume=float(mesh.volume),
            surface_area=float(mesh.area),
            bounding_box=(_vector(bounds[0]), _vector(bounds[1])),
            center_of_mass=_vector(mesh.center_mass),
        )
    except Exception as exc:
        raise AnalysisError(f"failed to analyze mesh data: {exc}") from exc
