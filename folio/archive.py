from __future__ import annotations

from dataclasses import dataclass
import io
import logging
from pathlib import Path
from typing import Iterator, Optional
import zipfile
import zlib

from .errors import CorruptArchiveError, PathNotFoundError, SerializationError
from .paths import normalize

logger = logging.getLogger(__name__)

HTML_SUFFIXES = (".html", ".xhtml", ".htm")
DIR_EXTERNAL_ATTR = (0o40775 << 16) | 0x10
_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError, RuntimeError, OSError, ValueError)


@dataclass
class ArchiveEntry:
    path: str
    info: zipfile.ZipInfo
    data: Optional[bytes] = None
    is_dir: bool = False
    removed: bool = False

    @property
    def name(self) -> str:
        return self.info.filename

    @property
    def is_html(self) -> bool:
        return not self.is_dir and self.path.lower().endswith(HTML_SUFFIXES)


_KEPT_INFO_FIELDS = (
    "comment",
    "extra",
    "internal_attr",
    "external_attr",
    "create_system",
    "create_version",
    "extract_version",
)


def _output_info(entry: ArchiveEntry) -> zipfile.ZipInfo:
    """Header for writing ``entry`` back under its normalized name.

    Files keep the source header fields and compression method, except that
    ``mimetype`` is always stored. Directories are written as bare stored
    ``name/`` records.
    """

    source = entry.info
    if entry.is_dir:
        info = zipfile.ZipInfo(f"{entry.path}/", date_time=source.date_time)
        info.compress_type = zipfile.ZIP_STORED
        info.external_attr = source.external_attr or DIR_EXTERNAL_ATTR
        return info
    info = zipfile.ZipInfo(entry.path, date_time=source.date_time)
    for name in _KEPT_INFO_FIELDS:
        setattr(info, name, getattr(source, name))
    # EPUB 要求 mimetype 不压缩
    info.compress_type = zipfile.ZIP_STORED if entry.path == "mimetype" else source.compress_type
    return info



def new_file_entry(path: str, data: bytes) -> ArchiveEntry:
    norm = normalize(path)
    info = zipfile.ZipInfo(norm)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    return ArchiveEntry(path=norm, info=info, data=data)


def new_dir_entry(path: str) -> ArchiveEntry:
    norm = normalize(path)
    info = zipfile.ZipInfo(f"{norm}/")
    info.compress_type = zipfile.ZIP_STORED
    info.external_attr = DIR_EXTERNAL_ATTR
    return ArchiveEntry(path=norm, info=info, is_dir=True)


class ArchiveStore:
    """Ordered, in-memory copy of every zip member.

    Entries live in an append-only list with a path -> position index.
    Removal only sets a tombstone so the write order never shifts.
    """

    def __init__(self) -> None:
        self._entries: list[ArchiveEntry] = []
        self._index: dict[str, int] = {}

    @classmethod
    def open(cls, archive_path: Path) -> "ArchiveStore":
        try:
            raw = Path(archive_path).read_bytes()
        except OSError as exc:
            raise CorruptArchiveError(f"failed to open EPUB: {exc}") from exc
        return cls.from_bytes(raw)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ArchiveStore":
        store = cls()
        try:
            zf = zipfile.ZipFile(io.BytesIO(raw), "r")
        except (zipfile.BadZipFile, OSError, ValueError) as exc:
            raise CorruptArchiveError(f"failed to open EPUB: {exc}") from exc

        with zf:
            for info in zf.infolist():
                norm = normalize(info.filename)
                if not norm:
                    logger.warning("skipping zip member without a usable path: %r", info.filename)
                    continue
                is_dir = info.is_dir()
                data: Optional[bytes] = None
                if not is_dir:
                    try:
                        data = zf.read(info)
                    except _READ_ERRORS as exc:
                        raise CorruptArchiveError(f"failed to read zip entry ({info.filename}): {exc}") from exc

                existing = store._index.get(norm)
                if existing is not None:
                    logger.warning("duplicate zip member %r replaces earlier %r", info.filename, norm)
                    store._entries[existing] = ArchiveEntry(path=norm, info=info, data=data, is_dir=is_dir)
                    continue
                store._append(ArchiveEntry(path=norm, info=info, data=data, is_dir=is_dir))
        return store

    def _append(self, entry: ArchiveEntry) -> None:
        self._index[entry.path] = len(self._entries)
        self._entries.append(entry)

    def __len__(self) -> int:
        return sum(1 for entry in self._entries if not entry.removed)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.get(path) is not None

    def __iter__(self) -> Iterator[ArchiveEntry]:
        return (entry for entry in self._entries if not entry.removed)

    def find(self, path: str) -> Optional[ArchiveEntry]:
        position = self._index.get(normalize(path))
        if position is None:
            return None
        return self._entries[position]

    def get(self, path: str) -> Optional[ArchiveEntry]:
        entry = self.find(path)
        if entry is None or entry.removed:
            return None
        return entry

    def put(self, entry: ArchiveEntry) -> ArchiveEntry:
        position = self._index.get(entry.path)
        if position is None:
            self._append(entry)
        else:
            self._entries[position] = entry
        return entry

    def html_entries(self) -> list[ArchiveEntry]:
        return [entry for entry in self if entry.is_html]

    def remove(self, path: str) -> bool:
        norm = normalize(path)
        entry = self.find(norm)
        if entry is None:
            raise PathNotFoundError(f"file does not exist: {norm}", norm)
        if entry.removed:
            return False
        entry.removed = True
        return True

    def ensure_directories(self, path: str) -> list[str]:
        parts = normalize(path).split("/")[:-1]
        created: list[str] = []
        current = ""
        for part in parts:
            current = f"{current}/{part}" if current else part
            existing = self.find(current)
            if existing is not None and not existing.removed:
                continue
            if existing is not None and existing.is_dir:
                existing.removed = False
            else:
                self.put(new_dir_entry(current))
            created.append(current)
        return created

    def serialize(self) -> bytes:
        buffer = io.BytesIO()
        try:
            with zipfile.ZipFile(buffer, "w") as zf:
                for entry in self:
                    zf.writestr(_output_info(entry), b"" if entry.is_dir else entry.data or b"")
        except (RuntimeError, ValueError, OSError, NotImplementedError, zlib.error, zipfile.LargeZipFile) as exc:
            raise SerializationError(f"failed to write archive: {exc}") from exc
        return buffer.getvalue()
