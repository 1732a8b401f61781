"""
Destination handling for received files.

File names arrive from the peer and are untrusted: they are reduced to a
bare file name before they touch the filesystem, and the resolved path is
checked to stay inside the target directory.
"""

import logging
import mimetypes
import os
import re
from pathlib import Path
from typing import BinaryIO

from config import DEFAULT_SAVE_DIR, FALLBACK_SAVE_DIR

logger = logging.getLogger(__name__)

DEFAULT_FILE_NAME = "received_file"
MAX_NAME_LENGTH = 255  # bytes, not characters

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_MEDIA_PREFIXES = ("image/", "video/", "audio/")


def sanitize_file_name(raw: str) -> str:
    """
    Reduce an untrusted name to a plain file name.

    Directory components (either separator style), control characters
    and leading dots are dropped, so "../../evil" becomes "evil".
    """
    name = _CONTROL_CHARS.sub("", raw).replace("\\", "/")
    name = name.rsplit("/", 1)[-1].strip()
    name = name.lstrip(".").strip()
    if not name:
        return DEFAULT_FILE_NAME
    return _truncate_utf8(name, MAX_NAME_LENGTH)


def _truncate_utf8(name: str, limit: int) -> str:
    """Shorten `name` to at most `limit` UTF-8 bytes, keeping the extension."""
    if len(name.encode("utf-8")) <= limit:
        return name
    stem, ext = os.path.splitext(name)
    if len(ext.encode("utf-8")) >= limit // 2:
        stem, ext = name, ""
    budget = limit - len(ext.encode("utf-8"))
    # errors="ignore" drops a multibyte character cut in half
    stem = stem.encode("utf-8")[:budget].decode("utf-8", errors="ignore")
    return (stem + ext) or DEFAULT_FILE_NAME


def is_media_file(path: str) -> bool:
    """Whether the platform media index would care about this file."""
    mime, _ = mimetypes.guess_type(path)
    return bool(mime) and mime.startswith(_MEDIA_PREFIXES)


def resolve_destination(directory: str | Path, file_name: str) -> Path:
    """Join a sanitized name onto `directory`, refusing anything that escapes it."""
    base = Path(directory).resolve()
    target = (base / sanitize_file_name(file_name)).resolve()
    if target.parent != base:
        raise PermissionError(f"Refusing destination outside {base}: {file_name!r}")
    return target


class FileSink:
    """Opens destination files, falling back to an always-writable directory."""

    def __init__(
        self,
        save_dir: str = DEFAULT_SAVE_DIR,
        fallback_dir: str = FALLBACK_SAVE_DIR,
    ) -> None:
        self.save_dir = save_dir
        self.fallback_dir = fallback_dir

    def _open_in(self, directory: str, file_name: str) -> tuple[BinaryIO, Path]:
        os.makedirs(directory, exist_ok=True)
        path = resolve_destination(directory, file_name)
        return open(path, "wb"), path

    def open(self, file_name: str) -> tuple[BinaryIO, Path, bool]:
        """
        Create the destination for `file_name`.

        Returns (file object, path, used_fallback). Raises OSError only when
        the fallback directory is unusable too.
        """
        try:
            handle, path = self._open_in(self.save_dir, file_name)
            logger.info(f"Receiving into {path}")
            return handle, path, False
        except OSError as e:
            logger.error(f"Cannot create file in {self.save_dir}: {e}")

        handle, path = self._open_in(self.fallback_dir, file_name)
        logger.info(f"Receiving into fallback location {path}")
        return handle, path, True
