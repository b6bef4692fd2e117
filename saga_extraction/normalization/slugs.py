"""Slug generation for materialized entities."""

from __future__ import annotations

import re
import unicodedata
from typing import Callable

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
MAX_SLUG_LENGTH = 200


def slugify(name: str) -> str:
    """ASCII-fold, lowercase, and hyphenate a display name."""
    folded = unicodedata.normalize("NFKD", name or "").encode("ascii", "ignore").decode("ascii")
    slug = _NON_ALNUM_RE.sub("-", folded.lower()).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    return slug or "entity"


def first_available_slug(
    base: str, exists: Callable[[str], bool], *, max_attempts: int = 10_000
) -> str:
    """Return ``base``, ``base-2``, ``base-3``, ... whichever is free first."""
    if not exists(base):
        return base
    for suffix in range(2, max_attempts + 2):
        candidate = f"{base}-{suffix}"
        if not exists(candidate):
            return candidate
    raise RuntimeError(f"No free slug for '{base}' after {max_attempts} attempts")
