"""
Interfaces of the desktop shell the control plane talks to.

The window, the UI event sink and the preferences store belong to the desktop
shell. Only their contracts live here, together with headless stand-ins used
when the control plane runs on its own (CLI, tests).
"""

import logging
from typing import Any, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class UiSink(Protocol):
    def send(self, channel: str, payload: Any = None) -> None: ...


class WindowHost(Protocol):
    def native_handle(self) -> Optional[int]: ...
    def is_maximized(self) -> bool: ...
    def is_fullscreen(self) -> bool: ...
    def get_size(self) -> Tuple[int, int]: ...
    def set_size(self, width: int, height: int) -> None: ...
    def set_aspect_ratio(self, ratio: float) -> None: ...
    def toggle_fullscreen(self) -> None: ...
    def quit(self) -> None: ...


class Preferences(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...
    def set(self, key: str, value: Any) -> None: ...


class LoggingUiSink:
    def send(self, channel: str, payload: Any = None) -> None:
        logger.debug(f"[ui] {channel}: {payload!r}")


class HeadlessWindow:
    def __init__(self, width: int = 700, height: int = 450, handle: Optional[int] = None) -> None:
        self.width = width
        self.height = height
        self.handle = handle
        self.maximized = False
        self.fullscreen = False
        self.aspect_ratio: Optional[float] = None
        self.quit_requested = False

    def native_handle(self) -> Optional[int]:
        return self.handle

    def is_maximized(self) -> bool:
        return self.maximized

    def is_fullscreen(self) -> bool:
        return self.fullscreen

    def get_size(self) -> Tuple[int, int]:
        return self.width, self.height

    def set_size(self, width: int, height: int) -> None:
        self.width, self.height = width, height

    def set_aspect_ratio(self, ratio: float) -> None:
        self.aspect_ratio = ratio

    def toggle_fullscreen(self) -> None:
        self.fullscreen = not self.fullscreen

    def quit(self) -> None:
        self.quit_requested = True


class MemoryPreferences:
    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._values: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
