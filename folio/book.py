from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import tempfile
from typing import Callable, Iterable, Optional

from .archive import ArchiveStore
from .assets import AssetImporter
from .content import ContentEditor, HtmlTransform
from .errors import (
    NoDescriptorError,
    OutsidePackageDirError,
    PathNotFoundError,
    SerializationError,
    ValidationError,
)
from .package import PackageDocument
from .paths import href_for, normalize, resolve_href

logger = logging.getLogger(__name__)

DESCRIPTOR_SUFFIX = ".opf"


def _is_descriptor(path: str) -> bool:
    return path.lower().endswith(DESCRIPTOR_SUFFIX)


class Epub:
    """An EPUB loaded fully into memory for editing.

    Nothing touches the input file after loading; ``save`` writes a new
    container. Not safe to share between threads.
    """

    def __init__(self, store: ArchiveStore, package: PackageDocument) -> None:
        self.store = store
        self.package = package
        self.content = ContentEditor(store, self.remove_file)
        self.assets = AssetImporter(store, package)

    @classmethod
    def open(cls, input_path: Path) -> "Epub":
        store = ArchiveStore.open(Path(input_path))
        epub = cls._from_store(store)
        logger.info(
            "opened %s: %d entries, descriptor %s, %d manifest items",
            input_path,
            len(store),
            epub.package.path,
            len(epub.package.manifest),
        )
        return epub

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Epub":
        return cls._from_store(ArchiveStore.from_bytes(raw))

    @classmethod
    def _from_store(cls, store: ArchiveStore) -> "Epub":
        descriptors = [entry for entry in store if not entry.is_dir and _is_descriptor(entry.path)]
        if not descriptors:
            raise NoDescriptorError("content.opf not found")
        if len(descriptors) > 1:
            logger.warning(
                "multiple package descriptors found, using %s and ignoring %s",
                descriptors[0].path,
                ", ".join(entry.path for entry in descriptors[1:]),
            )
        descriptor = descriptors[0]
        return cls(store, PackageDocument.parse(descriptor.data or b"", descriptor.path))

    @property
    def package_dir(self) -> str:
        return self.package.package_dir

    def names(self) -> list[str]:
        return [entry.path for entry in self.store]

    def spine_paths(self) -> list[str]:
        paths = []
        for ref in self.package.spine:
            item = self.package.get_item(ref.idref)
            if item is not None:
                paths.append(resolve_href(self.package_dir, item.href))
        return paths

    def read(self, path: str) -> bytes:
        entry = self.store.get(path)
        if entry is None or entry.is_dir:
            raise PathNotFoundError(f"file does not exist: {normalize(path)}", normalize(path))
        return entry.data or b""

    # ---------- HTML ----------

    def find_html_by_text(self, text: str) -> list[str]:
        return self.content.find_by_text(text)

    def replace_all_html(self, old_text: str, new_text: str) -> int:
        return self.content.replace_all(old_text, new_text)

    def apply_html(self, fn: Optional[HtmlTransform]) -> int:
        return self.content.apply(fn)

    def remove_html_containing(self, keywords: Iterable[str]) -> list[str]:
        return self.content.remove_containing(keywords)

    def count_html(self) -> int:
        return self.content.count()

    # ---------- adding and removing ----------

    def add_chapter(self, file_path: str, html_text: str, spine_index: int = -1) -> str:
        return self.assets.add_chapter(file_path, html_text, spine_index)

    def add_chapter_from_file(self, chapter_path: str, html_file_path: str, spine_index: int = -1) -> str:
        return self.assets.import_chapter_with_assets(chapter_path, html_file_path, spine_index)

    def add_image(self, file_path: str, data: bytes) -> Optional[str]:
        return self.assets.add_image(file_path, data)

    def remove_file(self, file_path: str) -> bool:
        if not file_path:
            raise ValidationError("file path cannot be empty")
        norm = normalize(file_path)
        if norm == self.package.path:
            raise ValidationError("the package descriptor cannot be removed")
        try:
            href: Optional[str] = href_for(self.package_dir, norm)
        except OutsidePackageDirError:
            # META-INF/, mimetype and the like are never in the manifest
            href = None
        if not self.store.remove(norm):
            return False
        if href is not None:
            removed_ids = self.package.remove_by_href(href)
            logger.info("removed %s (manifest ids: %s)", norm, ", ".join(removed_ids) or "-")
        return True

    # ---------- writing ----------

    def flush_descriptor(self) -> None:
        entry = self.store.get(self.package.path)
        if entry is None:
            raise SerializationError("content.opf not found in entries")
        entry.data = self.package.serialize()

    def to_bytes(self) -> bytes:
        self.flush_descriptor()
        return self.store.serialize()

    def save(self, output_path: Path) -> None:
        if str(output_path or "").strip() in {"", "."}:
            raise ValidationError("output path cannot be empty")
        target = Path(output_path)
        payload = self.to_bytes()
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_handle = tempfile.NamedTemporaryFile(
            prefix=f"{target.stem}.",
            suffix=".epub",
            dir=str(target.parent),
            delete=False,
        )
        tmp_path = Path(tmp_handle.name)
        try:
            with tmp_handle:
                tmp_handle.write(payload)
            tmp_path.replace(target)
        except OSError as exc:
            raise SerializationError(f"failed to write {target}: {exc}") from exc
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
        logger.info("saved %s (%d bytes)", target, len(payload))

    def save_as(self, output_path: Path) -> None:
        self.save(output_path)


@dataclass
class ProcessOptions:
    input_path: Path
    output_path: Path
    remove_html_keywords: list[str] = field(default_factory=list)
    replace_html: Optional[HtmlTransform] = None
    customize: Optional[Callable[[Epub], None]] = None


@dataclass
class ProcessReport:
    removed: list[str] = field(default_factory=list)
    modified: int = 0


def process_epub(options: ProcessOptions) -> ProcessReport:
    if not str(options.input_path or "").strip():
        raise ValidationError("input path cannot be empty")
    epub = Epub.open(Path(options.input_path))
    report = ProcessReport()
    if options.remove_html_keywords:
        report.removed = epub.remove_html_containing(options.remove_html_keywords)
    if options.replace_html is not None:
        report.modified = epub.apply_html(options.replace_html)
    if options.customize is not None:
        options.customize(epub)
    epub.save(Path(options.output_path))
    return report
