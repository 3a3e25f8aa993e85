"""Small helpers shared across the compiler package."""

from .versioning import extract_date_version

__all__ = ["extract_date_version"]
