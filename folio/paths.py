from __future__ import annotations

import posixpath
from urllib.parse import unquote

from .errors import OutsidePackageDirError


def normalize(path: str) -> str:
    normalized = posixpath.normpath((path or "").replace("\\", "/")).lstrip("/")
    while normalized.startswith("../"):
        normalized = normalized[3:]
    return "" if normalized in {"", ".", ".."} else normalized


def parent_dir(path: str) -> str:
    return normalize(posixpath.dirname(normalize(path)))


def href_for(package_dir: str, path: str) -> str:
    member = normalize(path)
    base = normalize(package_dir)
    if not base:
        return member
    prefix = f"{base}/"
    if not member.startswith(prefix):
        raise OutsidePackageDirError(f"file {member} is not under package directory {base}", member)
    return member[len(prefix):]


def resolve_href(package_dir: str, href: str) -> str:
    raw = unquote((href or "").split("#", 1)[0].strip())
    if not raw:
        return ""
    base = normalize(package_dir)
    return normalize(posixpath.join(base, raw) if base else raw)


def relative_to(from_dir: str, to_path: str) -> str:
    """Relative href from a directory to an archive member.

    Both sides are archive paths. Walks up one ``..`` per segment of
    ``from_dir`` past the common prefix, then down the rest of ``to_path``.
    """

    start = normalize(from_dir)
    target = normalize(to_path)
    if not start:
        return target

    from_parts = start.split("/")
    to_parts = target.split("/")
    common = 0
    for left, right in zip(from_parts, to_parts):
        if left != right:
            break
        common += 1

    rel_parts = [".."] * (len(from_parts) - common) + to_parts[common:]
    if not rel_parts:
        return posixpath.basename(target)
    return "/".join(rel_parts)
