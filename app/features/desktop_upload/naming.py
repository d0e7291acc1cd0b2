"""
Asset naming helpers.

Derives the default title and resolved filename of an upload from the
original file name, e.g. ``upload-foobar__topSHOT!!.jpg`` becomes the
title ``Upload Foobar Topshot`` and the filename ``upload-foobar-topshot.jpg``.

Author: Snapped Development Team
"""

import re
from typing import Optional

DEFAULT_TITLE = "Untitled"
DEFAULT_SLUG = "untitled"

_SEPARATORS = re.compile(r"[-_]")
_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9\s]")
_SLUG_STRIP = re.compile(r"[^\w\s-]", re.ASCII)
_SLUG_JOIN = re.compile(r"[\s_-]+")

def file_extension(filename: str) -> str:
    """Lowercased text after the last dot, or '' when there is none."""
    last_dot = filename.rfind(".")
    if last_dot == -1 or last_dot == len(filename) - 1:
        return ""
    return filename[last_dot + 1:].lower()

def strip_extension(filename: str) -> str:
    last_dot = filename.rfind(".")
    if last_dot == -1:
        return filename
    return filename[:last_dot]

def normalize_title(raw: Optional[str]) -> str:
    """
    Normalize a raw title for display and storage.

    Separators become spaces, anything that is not an ASCII letter, digit
    or space is dropped, and each word is capitalized. Returns '' when
    nothing is left so callers can pick their own fallback.
    """
    if not raw or not isinstance(raw, str):
        return ""
    normalized = _SEPARATORS.sub(" ", raw.strip())
    normalized = _WHITESPACE.sub(" ", normalized)
    normalized = _NON_ALNUM.sub("", normalized)
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    words = [word[0].upper() + word[1:].lower() for word in normalized.split(" ") if word]
    return " ".join(words)

def slugify(value: Optional[str]) -> str:
    if not value or not isinstance(value, str):
        return DEFAULT_SLUG
    slug = _SLUG_STRIP.sub("", value.lower().strip())
    slug = _SLUG_JOIN.sub("-", slug)
    return slug.strip("-")

def resolve_filename(title: Optional[str], extension: str) -> str:
    """Slugified title with the original extension reattached."""
    slug = slugify(title or DEFAULT_SLUG) or DEFAULT_SLUG
    if not extension:
        return slug
    return f"{slug}.{extension}"

def default_title(filename: str) -> str:
    return normalize_title(strip_extension(filename)) or DEFAULT_TITLE

def default_names(filename: str) -> tuple:
    """(title, resolved_filename) defaults for a newly selected file."""
    title = default_title(filename)
    return title, resolve_filename(title, file_extension(filename))

def user_filename(edited: str, original_filename: str) -> str:
    """
    Resolve a user-typed filename.

    The stem is slugified and the original extension always reattached,
    so a user cannot change the stored file type by renaming.
    """
    return resolve_filename(strip_extension(edited.strip()), file_extension(original_filename))
