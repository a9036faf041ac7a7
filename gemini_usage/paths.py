"""Locate Gemini CLI session storage on disk.

Layout: ``<home>/tmp/<project-hash>/chats/session-*.json``.
"""
from __future__ import annotations

from pathlib import Path

SESSION_FILE_PREFIX = "session-"
SESSION_FILE_SUFFIX = ".json"
CHATS_DIR_NAME = "chats"


def is_session_file_name(name: str) -> bool:
    return name.startswith(SESSION_FILE_PREFIX) and name.endswith(SESSION_FILE_SUFFIX)


def chats_dir_for(tmp_root: Path, project_hash: str) -> Path | None:
    """Return the chats directory of one project-hash directory, if it exists."""
    chats_path = tmp_root / project_hash / CHATS_DIR_NAME
    try:
        if chats_path.is_dir():
            return chats_path
    except OSError:
        pass
    return None


def get_chats_dirs(tmp_root: Path) -> list[Path]:
    """Enumerate every ``<project-hash>/chats`` directory under the storage root."""
    try:
        hash_dirs = sorted(tmp_root.iterdir())
    except OSError:
        return []

    chats_dirs: list[Path] = []
    for entry in hash_dirs:
        try:
            if not entry.is_dir():
                continue
        except OSError:
            continue
        chats_path = chats_dir_for(tmp_root, entry.name)
        if chats_path is not None:
            chats_dirs.append(chats_path)
    return chats_dirs


def list_session_files(chats_dir: Path) -> list[Path] | None:
    """List session files in a chats directory; None when it cannot be read."""
    try:
        entries = list(chats_dir.iterdir())
    except OSError:
        return None

    files: list[Path] = []
    for entry in entries:
        if not is_session_file_name(entry.name):
            continue
        try:
            if entry.is_file():
                files.append(entry)
        except OSError:
            continue
    return files


def is_installed(home: Path) -> bool:
    """True when the Gemini CLI home or its session storage directory exists."""
    return home.exists() or (home / "tmp").exists()
