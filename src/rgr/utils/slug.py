"""Helpers that turn free-form text into names git and the filesystem accept."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_UNSAFE: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_DASH_RUN: Pattern[str] = re.compile(r"-{2,}")
_DOT_RUN: Pattern[str] = re.compile(r"\.{2,}")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 60) -> str:
    """Lower-case ``value`` and collapse anything unsafe into single dashes."""
    slug = _clean(value or "")
    if not slug:
        slug = _clean(fallback) or "item"
    if len(slug) > max_length:
        slug = _shorten(slug, max_length)
    return slug


def branch_slug(hint: str | None, *, fallback: str = "attempt") -> str:
    """Slugify every ``/``-separated segment of ``hint`` for use as a ref name.

    Empty segments are dropped so ``attempts//implementor/`` and
    ``attempts/implementor`` map to the same name.  Segments never start with
    a dot and never end in ``.lock`` because ``git check-ref-format`` rejects
    both.
    """
    segments = []
    for raw in (hint or "").split("/"):
        segment = slugify(raw, fallback="", max_length=40) if raw.strip() else ""
        segment = segment.lstrip(".")
        if segment.endswith(".lock"):
            segment = segment[: -len(".lock")] or "lock"
        if segment:
            segments.append(segment)
    if not segments:
        return slugify(fallback)
    return "/".join(segments)


def _clean(value: str) -> str:
    slug = _UNSAFE.sub("-", value.strip().lower())
    slug = _DOT_RUN.sub(".", slug)
    slug = _DASH_RUN.sub("-", slug)
    return slug.strip("-.")


def _shorten(slug: str, max_length: int) -> str:
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    keep = max(max_length - len(digest) - 1, 1)
    prefix = slug[:keep].rstrip("-.") or slug[:keep]
    return f"{prefix}-{digest}"


__all__ = ["branch_slug", "slugify"]
