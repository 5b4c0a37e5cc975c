from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from .archive import ArchiveEntry, ArchiveStore
from .errors import TransformError, ValidationError

logger = logging.getLogger(__name__)

HtmlTransform = Callable[[str, str], str]


def decode_html(data: Optional[bytes]) -> str:
    # surrogateescape keeps non-UTF-8 bytes intact when a chapter is written back
    return (data or b"").decode("utf-8", errors="surrogateescape")


def encode_html(text: str) -> bytes:
    return text.encode("utf-8", errors="surrogateescape")


def should_remove_html(html_text: str, keywords: Iterable[str]) -> bool:
    return any(keyword and keyword in html_text for keyword in keywords)


class ContentEditor:
    def __init__(self, store: ArchiveStore, remove: Callable[[str], bool]) -> None:
        self._store = store
        self._remove = remove

    def _html_entries(self) -> list[ArchiveEntry]:
        return self._store.html_entries()

    def count(self) -> int:
        return len(self._html_entries())

    def find_by_text(self, needle: str) -> list[str]:
        if not needle:
            raise ValidationError("search text cannot be empty")
        return [entry.path for entry in self._html_entries() if needle in decode_html(entry.data)]

    def replace_all(self, old: str, new: str) -> int:
        if not old:
            raise ValidationError("old text cannot be empty")
        count = 0
        for entry in self._html_entries():
            html_text = decode_html(entry.data)
            replaced = html_text.count(old)
            if replaced == 0:
                continue
            entry.data = encode_html(html_text.replace(old, new))
            count += replaced
        logger.debug("replaced %d occurrence(s) of %r", count, old)
        return count

    def apply(self, fn: Optional[HtmlTransform]) -> int:
        """Run ``fn(path, html)`` over every chapter and store what it returns.

        Not transactional: when ``fn`` raises, chapters already rewritten keep
        their new content and the error surfaces as ``TransformError``.
        """

        if fn is None:
            raise ValidationError("transform callback cannot be None")
        modified = 0
        for entry in self._html_entries():
            original = decode_html(entry.data)
            try:
                updated = fn(entry.path, original)
            except Exception as exc:
                raise TransformError(entry.path, modified, exc) from exc
            if not isinstance(updated, str):
                raise TransformError(entry.path, modified, TypeError(f"expected str, got {type(updated).__name__}"))
            if updated != original:
                entry.data = encode_html(updated)
                modified += 1
        return modified

    def remove_containing(self, keywords: Iterable[str]) -> list[str]:
        keywords = [keyword for keyword in keywords or [] if keyword]
        if not keywords:
            return []
        removed: list[str] = []
        for entry in self._html_entries():
            if not should_remove_html(decode_html(entry.data), keywords):
                continue
            if self._remove(entry.path):
                removed.append(entry.path)
        if removed:
            logger.info("removed %d chapter(s) matching %r", len(removed), keywords)
        return removed
