"""Small text helpers shared by runners, git integration and reporting."""

import re

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC_RE = re.compile(r"(?<!\*)\*([^*]+)\*(?!\*)")
_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_length: int = 40) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim edges, cap length."""
    slug = _NON_SLUG_RE.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")


def strip_ansi(text: str) -> str:
    """Remove terminal colour escape sequences."""
    return _ANSI_RE.sub("", text)


def strip_markdown_emphasis(text: str) -> str:
    """Drop **bold** and *italic* markers, keeping the inner text."""
    return _ITALIC_RE.sub(r"\1", _BOLD_RE.sub(r"\1", text))


def first_line(text: str, limit: int = 80) -> str:
    """First line of ``text`` truncated to ``limit`` characters."""
    return text.split("\n", 1)[0][:limit]
