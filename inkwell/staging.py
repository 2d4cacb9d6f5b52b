"""Scoped plaintext staging for the external editor flow.

Plaintext only ever touches disk inside :func:`staged_plaintext`, preferably
on a RAM-backed filesystem, and is overwritten and unlinked on exit.
"""

from __future__ import annotations

import logging
import os
import secrets
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from inkwell.constants import FILE_PERMISSIONS, TMPFS_PATHS

if TYPE_CHECKING:
    from collections.abc import Iterator

LOGGER = logging.getLogger(__name__)


def secure_temp_dir(candidates: tuple[str, ...] = TMPFS_PATHS) -> Path:
    """Return a memory-backed temp directory if one is writable."""
    for candidate in candidates:
        path = Path(candidate)
        if path.is_dir() and os.access(path, os.W_OK):
            return path
    fallback = Path(tempfile.gettempdir())
    LOGGER.warning(
        "No RAM-backed filesystem available; staging plaintext in %s",
        fallback,
    )
    return fallback


def _create_private_file(path: Path) -> int:
    # O_EXCL refuses to follow a pre-existing file or symlink at this path.
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_NOFOLLOW", 0)
    return os.open(path, flags, FILE_PERMISSIONS)


def _scrub(path: Path) -> None:
    """Overwrite a file with zero bytes and unlink it (best-effort)."""
    try:
        size = path.stat().st_size
        with path.open("r+b") as f:
            f.write(bytes(size))
            f.flush()
            os.fsync(f.fileno())
    except FileNotFoundError:
        return
    except OSError:
        LOGGER.warning("Could not overwrite staged file %s before removal", path.name)
    path.unlink(missing_ok=True)


@contextmanager
def staged_plaintext(
    content: str = "",
    *,
    suffix: str = ".md",
    directory: Path | None = None,
) -> Iterator[Path]:
    """Write ``content`` to a private temp file and yield its path.

    The file is created with mode 0o600 before any plaintext is written. On
    exit, on any path, it is zero-filled and removed.
    """
    base = directory if directory is not None else secure_temp_dir()
    path = base / f"inkwell-{secrets.token_hex(8)}{suffix}"
    fd = _create_private_file(path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        yield path
    finally:
        _scrub(path)
