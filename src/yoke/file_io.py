"""Workspace state I/O: atomic writes and forgiving reads."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import suppress
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".yoke"
_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01


def state_dir(workspace: str | Path) -> Path:
    """Return the per-workspace directory holding persisted loop state."""
    return Path(workspace) / STATE_DIR_NAME


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        except OSError as exc:
            if exc.errno != 13:
                raise
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text to disk atomically to avoid partial/corrupt files."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
        _replace_file_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def read_text(path: Path) -> str | None:
    """Return file contents, or ``None`` when the file is missing or unreadable."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except UnicodeDecodeError:
        return path.read_bytes().decode("utf-8", errors="replace")
    except OSError:
        logger.warning("Could not read %s", path, exc_info=True)
        return None


def read_json(path: Path, fallback: dict[str, Any]) -> dict[str, Any]:
    """Load a JSON object from *path*, returning a copy of *fallback* on any failure."""
    raw = read_text(path)
    if raw is None or not raw.strip():
        return dict(fallback)
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Could not parse JSON file %s; using fallback payload", path, exc_info=True)
        return dict(fallback)
    if not isinstance(data, dict):
        return dict(fallback)
    return data
