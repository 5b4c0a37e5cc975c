from __future__ import annotations

import logging
import os
from pathlib import Path
import posixpath
import re
from typing import Optional

from .archive import ArchiveStore, new_file_entry
from .env import import_dir_name
from .errors import PathExistsError, ValidationError
from .package import XHTML_MEDIA_TYPE, PackageDocument
from .paths import href_for, normalize, parent_dir, relative_to

logger = logging.getLogger(__name__)

IMG_SRC_RE = re.compile(r"<img[^>]+src\s*=\s*[\"']?([^\"'\s>]+)[\"']?[^>]*>")
IMG_SRC_REWRITE_RE = re.compile(r"(<img[^>]+src\s*=\s*[\"']?)([^\"'\s>]+)([\"']?)")
CSS_URL_RE = re.compile(r"url\s*\(\s*[\"']?([^\"')]+)[\"']?\s*\)")
CSS_URL_REWRITE_RE = re.compile(r"(url\s*\(\s*[\"']?)([^\"')]+?)(\s*[\"']?\s*\))")
EXTERNAL_PREFIXES = ("data:", "http://", "https://", "//")
CSS_IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".bmp"}
DEFAULT_IMAGE_MEDIA_TYPE = "image/jpeg"


def guess_image_media_type(name: str) -> str:
    suffix = Path(name).suffix.lower()
    return {
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".png": "image/png",
        ".gif": "image/gif",
        ".svg": "image/svg+xml",
        ".webp": "image/webp",
        ".bmp": "image/bmp",
    }.get(suffix, DEFAULT_IMAGE_MEDIA_TYPE)


def _is_external(ref: str) -> bool:
    return ref.startswith(EXTERNAL_PREFIXES)


def _resolve_source_path(base_dir: str, ref: str) -> str:
    if os.path.isabs(ref):
        return os.path.normpath(ref)
    return os.path.normpath(os.path.join(base_dir, ref))


def extract_image_refs(html_text: str, base_dir: str) -> list[str]:
    """Collect on-disk paths of images referenced by ``<img src>`` and CSS ``url()``.

    Regex based on purpose; srcset lists and other reference forms are not
    scanned. ``url()`` hits only count when they end in an image suffix.
    """

    paths: list[str] = []
    seen: set[str] = set()

    def collect(ref: str, *, images_only: bool) -> None:
        ref = ref.strip()
        if not ref or _is_external(ref):
            return
        full_path = _resolve_source_path(base_dir, ref)
        if images_only and Path(full_path).suffix.lower() not in CSS_IMAGE_SUFFIXES:
            return
        if full_path not in seen:
            seen.add(full_path)
            paths.append(full_path)

    for match in IMG_SRC_RE.finditer(html_text):
        collect(match.group(1), images_only=False)
    for match in CSS_URL_RE.finditer(html_text):
        collect(match.group(1), images_only=True)
    return paths


def rewrite_image_refs(html_text: str, image_map: dict[str, str], base_dir: str, chapter_dir: str) -> str:
    def replace(match: re.Match) -> str:
        ref = match.group(2).strip()
        if not ref or _is_external(ref):
            return match.group(0)
        target = image_map.get(_resolve_source_path(base_dir, ref))
        if target is None:
            return match.group(0)
        return f"{match.group(1)}{relative_to(chapter_dir, target)}{match.group(3)}"

    html_text = IMG_SRC_REWRITE_RE.sub(replace, html_text)
    return CSS_URL_REWRITE_RE.sub(replace, html_text)


class AssetImporter:
    def __init__(self, store: ArchiveStore, package: PackageDocument) -> None:
        self._store = store
        self._package = package

    def import_dir_for(self, chapter_path: str) -> str:
        base = self._package.package_dir or parent_dir(chapter_path)
        return normalize(posixpath.join(base, import_dir_name()) if base else import_dir_name())

    def _check_new_chapter(self, path: str) -> tuple[str, str]:
        if not path:
            raise ValidationError("chapter path cannot be empty")
        norm = normalize(path)
        if not norm:
            raise ValidationError(f"invalid chapter path: {path!r}")
        if norm in self._store:
            raise PathExistsError(f"file already exists: {path}", norm)
        return norm, href_for(self._package.package_dir, norm)

    def add_chapter(self, path: str, html_text: str, spine_index: int = -1) -> str:
        norm, href = self._check_new_chapter(path)
        self._store.ensure_directories(norm)
        self._store.put(new_file_entry(norm, html_text.encode("utf-8", errors="surrogateescape")))
        item_id = self._package.add_manifest_item(href, XHTML_MEDIA_TYPE)
        self._package.insert_spine_ref(item_id, spine_index)
        logger.info("added chapter %s as %s", norm, item_id)
        return item_id

    def add_image(self, path: str, data: bytes) -> Optional[str]:
        if not path:
            raise ValidationError("image path cannot be empty")
        norm = normalize(path)
        if not norm:
            raise ValidationError(f"invalid image path: {path!r}")
        if norm in self._store:
            return None
        href = href_for(self._package.package_dir, norm)
        self._store.ensure_directories(norm)
        self._store.put(new_file_entry(norm, data))
        return self._package.add_manifest_item(href, guess_image_media_type(norm))

    def import_chapter_with_assets(self, chapter_path: str, source_html_path: str, spine_index: int = -1) -> str:
        if not source_html_path:
            raise ValidationError("HTML file path cannot be empty")
        norm, _ = self._check_new_chapter(chapter_path)

        source = Path(source_html_path)
        html_text = source.read_text(encoding="utf-8", errors="surrogateescape")
        base_dir = str(source.parent)
        chapter_dir = parent_dir(norm)
        image_dir = self.import_dir_for(norm)

        image_map: dict[str, str] = {}
        for image_path in extract_image_refs(html_text, base_dir):
            target = normalize(f"{image_dir}/{os.path.basename(image_path)}")
            if target in self._store:
                image_map[image_path] = target
                continue
            try:
                data = Path(image_path).read_bytes()
            except OSError as exc:
                logger.warning("skipping unreadable image %s referenced by %s: %s", image_path, source, exc)
                continue
            self.add_image(target, data)
            image_map[image_path] = target

        updated = rewrite_image_refs(html_text, image_map, base_dir, chapter_dir)
        return self.add_chapter(norm, updated, spine_index)
