import logging
import os
import string
import sys
from pathlib import Path
from typing import Any, Dict, List

from nautic.services.media import is_video_file

logger = logging.getLogger(__name__)

HIDDEN_NAMES = {"System Volume Information"}


def is_hidden(name: str) -> bool:
    return name.startswith((".", "$")) or name in HIDDEN_NAMES


def list_directory(path: str) -> Dict[str, Any]:
    """
    List a directory for the remote file browser.

    Raises FileNotFoundError for a missing path and NotADirectoryError /
    PermissionError as os.scandir does.
    """
    directory = Path(path)
    if not directory.exists():
        raise FileNotFoundError(path)

    items = []
    with os.scandir(directory) as entries:
        for entry in entries:
            if is_hidden(entry.name):
                continue
            try:
                is_dir = entry.is_dir()
            except OSError:
                # Broken links and locked entries are listed as plain files
                is_dir = False
            items.append({
                "name": entry.name,
                "path": str(directory / entry.name),
                "isDir": is_dir,
                "isVideo": not is_dir and is_video_file(entry.name),
            })

    items.sort(key=lambda item: (not item["isDir"], item["name"].lower(), item["name"]))

    resolved = directory.resolve()
    parent = resolved.parent
    return {
        "path": str(directory),
        "parent": None if parent == resolved else str(parent),
        "items": items,
    }


def list_drives() -> List[Dict[str, str]]:
    if sys.platform == "win32":
        drives = []
        for letter in string.ascii_uppercase:
            root = f"{letter}:\\"
            if os.path.exists(root):
                drives.append({"name": f"{letter}:", "description": "Local Disk"})
        return drives

    drives = [{"name": "/", "description": "System Drive"}]
    home = Path.home()
    drives.append({"name": str(home), "description": "Home"})
    for base in (Path("/media"), Path("/mnt"), Path("/Volumes")):
        if not base.is_dir():
            continue
        try:
            for child in sorted(base.iterdir()):
                if child.is_dir() and not is_hidden(child.name):
                    drives.append({"name": str(child), "description": "Removable Disk"})
        except OSError as e:
            logger.debug(f"Could not scan {base}: {e}")
    return drives


def default_locations() -> Dict[str, str]:
    home = Path.home()
    return {
        "downloads": str(home / "Downloads"),
        "documents": str(home / "Documents"),
        "home": str(home),
    }
