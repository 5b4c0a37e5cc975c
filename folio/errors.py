from __future__ import annotations

from typing import Optional


class FolioError(Exception):
    pass


class ArchiveError(FolioError):
    pass


class CorruptArchiveError(ArchiveError):
    pass


class NoDescriptorError(ArchiveError):
    pass


class InvalidDescriptorError(ArchiveError):
    pass


class PathError(FolioError):
    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class PathExistsError(PathError):
    pass


class PathNotFoundError(PathError):
    pass


class OutsidePackageDirError(PathError):
    pass


class ValidationError(FolioError, ValueError):
    pass


class SerializationError(FolioError):
    pass


class TransformError(FolioError):
    """Raised when an ``apply_html`` callback fails.

    Chapters rewritten before the failing one keep their new content;
    ``modified`` says how many that was.
    """

    def __init__(self, path: str, modified: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Failed to process HTML ({path}): {cause}")
        self.path = path
        self.modified = modified
