from __future__ import annotations

from collections.abc import Callable

import bleach

_ALLOWED_TAGS = [
    "a",
    "p",
    "br",
    "div",
    "span",
    "strong",
    "em",
    "b",
    "i",
    "u",
    "ul",
    "ol",
    "li",
    "blockquote",
    "code",
    "pre",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "table",
    "thead",
    "tbody",
    "tr",
    "td",
    "th",
    "hr",
    "img",
]


def _attr_filter(tag: str, name: str, value: str) -> str | None:
    v = (value or "").strip()
    if tag == "a" and name == "href":
        if v.startswith(("http://", "https://", "mailto:", "tel:")):
            return v
        return None
    if tag == "img" and name == "src":
        # Remote images are tracking beacons when rendered inside the CRM.
        return v if v.startswith("cid:") else None
    if name in {"title", "alt"}:
        return value
    if tag == "a" and name in {"rel", "target"}:
        return value
    return None


def sanitize_html(html: str | None) -> str | None:
    """Clean provider HTML bodies before they are stored."""
    if html is None:
        return None

    allowed_attrs: dict[str, Callable[[str, str, str], str | None] | list[str]] = {"*": _attr_filter}
    cleaned = bleach.clean(html, tags=_ALLOWED_TAGS, attributes=allowed_attrs, strip=True)
    return cleaned.strip() or None
