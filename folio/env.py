from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_IMPORT_DIR = "static_images"
DEFAULT_LOG_LEVEL = "INFO"


def _read_setting_file(file_var: str) -> Optional[str]:
    try:
        content = Path(file_var).read_text(encoding="utf-8").strip()
    except OSError as exc:
        logger.warning("cannot read setting file %s: %s", file_var, exc)
        return None
    return content or None


def read_env(name: str, default: Optional[str] = None) -> Optional[str]:
    """``NAME`` wins, then the contents of the file named by ``NAME_FILE``."""

    value = os.getenv(name)
    if value:
        return value
    file_var = os.getenv(f"{name}_FILE")
    from_file = _read_setting_file(file_var) if file_var else None
    return default if from_file is None else from_file


def import_dir_name() -> str:
    raw = (read_env("FOLIO_IMPORT_DIR") or "").strip().strip("/\\")
    return raw or DEFAULT_IMPORT_DIR


def log_level() -> int:
    raw = (read_env("FOLIO_LOG_LEVEL") or DEFAULT_LOG_LEVEL).strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO
