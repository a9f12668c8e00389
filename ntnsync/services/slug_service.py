"""Filename and folder name rules for materialized pages."""

from __future__ import annotations

import re

from ntnsync.exceptions import InvalidFolderNameError

MAX_FILENAME_LENGTH = 100
UNTITLED = "untitled"

_SEPARATORS = frozenset(" -_/\\:|")
_FOLDER_RE = re.compile(r"^[a-z0-9-]+$")


def sanitize_filename(name: str) -> str:
    """Make a page title safe for use as a filename.

    - Lowercase
    - Keep ASCII letters and digits, map separators (space - _ / \\ : |) to hyphens
    - Drop everything else, including non-ASCII characters
    - Collapse and trim hyphens
    - Drop leading characters until the name starts with a letter
    - Truncate to 100 chars
    - Return "untitled" when nothing is left
    """
    chars: list[str] = []
    for ch in name.lower():
        if ("a" <= ch <= "z") or ("0" <= ch <= "9"):
            chars.append(ch)
        elif ch in _SEPARATORS:
            chars.append("-")

    filename = re.sub(r"-{2,}", "-", "".join(chars)).strip("-")
    filename = filename.lstrip("0123456789-")
    filename = filename[:MAX_FILENAME_LENGTH].rstrip("-")
    return filename or UNTITLED


def validate_folder_name(folder: str) -> None:
    """Raise InvalidFolderNameError unless *folder* matches ``[a-z0-9-]+``."""
    if not folder:
        msg = "folder name cannot be empty"
        raise InvalidFolderNameError(msg)
    if not _FOLDER_RE.match(folder):
        msg = "folder name must contain only lowercase letters, numbers, and hyphens"
        raise InvalidFolderNameError(msg)
