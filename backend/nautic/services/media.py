import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from yt_dlp import YoutubeDL

logger = logging.getLogger(__name__)

# Played directly by browsers, no transcoding needed
BROWSER_PLAYABLE = [".mp4", ".webm", ".ogg", ".mov"]

# Everything we can hand to the transcoder
ALL_VIDEO_FORMATS = [
    ".mp4", ".mkv", ".avi", ".wmv", ".flv", ".webm", ".mov", ".m4v",
    ".ts", ".m2ts", ".mpg", ".mpeg", ".3gp",
]

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".ogg": "video/ogg",
    ".mov": "video/quicktime",
}

YOUTUBE_PATTERNS = [
    re.compile(r"^https?://(www\.)?youtube\.com/watch\?v="),
    re.compile(r"^https?://youtu\.be/"),
    re.compile(r"^https?://(www\.)?youtube\.com/shorts/"),
    re.compile(r"^https?://(www\.)?youtube\.com/live/"),
]


def extension(path: Union[str, Path]) -> str:
    return Path(str(path)).suffix.lower()


def is_video_file(path: Union[str, Path]) -> bool:
    return extension(path) in ALL_VIDEO_FORMATS


def is_url(target: str) -> bool:
    return "://" in target


def classify(path: Union[str, Path, None]) -> Dict[str, Any]:
    """Streaming availability of a source file, as reported to remote clients."""
    if not path:
        return {"available": False, "native": False, "needsTranscode": False}
    ext = extension(path)
    native = ext in BROWSER_PLAYABLE
    can_transcode = ext in ALL_VIDEO_FORMATS
    return {
        "available": native or can_transcode,
        "native": native,
        "needsTranscode": not native and can_transcode,
        "format": ext.lstrip(".").upper(),
    }


def mime_type(path: Union[str, Path]) -> str:
    return MIME_TYPES.get(extension(path), "video/mp4")


def is_youtube_url(url: str) -> bool:
    return any(p.match(url) for p in YOUTUBE_PATTERNS)


def is_youtube_playlist(url: str) -> bool:
    return "list=" in url and ("youtube.com" in url or "youtu.be" in url)


def _extract_info(url: str, flat: bool) -> Optional[Dict[str, Any]]:
    ydl_opts = {
        "quiet": True,
        "no_warnings": True,
        "skip_download": True,
        "noplaylist": not flat,
    }
    if flat:
        ydl_opts["extract_flat"] = "in_playlist"

    with YoutubeDL(ydl_opts) as ydl:
        try:
            return ydl.extract_info(url, download=False)
        except Exception as e:
            logger.error(f"yt-dlp extraction error for {url}: {e}")
            return None


def _metadata(info: Dict[str, Any], url: str) -> Dict[str, Any]:
    thumbnails = info.get("thumbnails") or []
    thumbnail = info.get("thumbnail") or (thumbnails[-1].get("url") if thumbnails else None)
    return {
        "id": info.get("id"),
        "url": info.get("webpage_url") or info.get("url") or url,
        "title": info.get("title", "Unknown"),
        "thumbnail": thumbnail,
        "channel": info.get("channel") or info.get("uploader"),
        "duration": info.get("duration") or 0,
    }


async def resolve_youtube(url: str) -> Optional[Dict[str, Any]]:
    """
    Fetch title/channel/thumbnail metadata for a YouTube video.
    Runs yt-dlp in a thread pool to avoid blocking the event loop.
    """
    loop = asyncio.get_running_loop()
    info = await loop.run_in_executor(None, _extract_info, url, False)
    if not info:
        return None
    return _metadata(info, url)


async def extract_playlist(url: str) -> List[Dict[str, Any]]:
    loop = asyncio.get_running_loop()
    info = await loop.run_in_executor(None, _extract_info, url, True)
    if not info:
        return []

    items = []
    for index, entry in enumerate(info.get("entries") or []):
        if not entry:
            continue
        item = _metadata(entry, url)
        if entry.get("id") and not is_url(str(entry.get("url", ""))):
            item["url"] = f"https://www.youtube.com/watch?v={entry['id']}"
        item["index"] = index
        items.append(item)
    logger.info(f"Extracted {len(items)} playlist entries from {url}")
    return items
