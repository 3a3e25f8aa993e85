"""Helpers for making sense of OpenSCAD version banners."""

from __future__ import annotations

import re
from typing import Optional


DATE_VERSION_PATTERN = re.compile(r"\b(20\d{2}(?:\.\d{2}){1,2})\b")
LEGACY_VERSION_PREFIX = "2021"


def extract_date_version(text: object) -> Optional[str]:
    """
    Return the date-style version (``2021.01``, ``2024.05.12``) found in ``text``.

    OpenSCAD prints banners such as ``OpenSCAD version 2021.01`` or nightly
    strings with a build suffix; only the first year-led token is kept.
    Anything that is not a string, or carries no such token, yields ``None``.
    """
    if not isinstance(text, str):
        return None
    match = DATE_VERSION_PATTERN.search(text)
    return match.group(1) if match else None


def is_legacy_version(version: Optional[str]) -> bool:
    return bool(version) and version.startswith(LEGACY_VERSION_PREFIX)
