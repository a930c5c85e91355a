"""
Supervision of the mpv playback engine and its JSON IPC channel.
"""

import asyncio
import enum
import json
import logging
import os
import sys
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from nautic.config import Settings
from nautic.services.state_store import PlayerStateStore
from nautic.shell import UiSink, WindowHost

logger = logging.getLogger(__name__)

# (observer id, property name); ids are part of the engine protocol contract
OBSERVED_PROPERTIES = [
    (1, "time-pos"),
    (2, "duration"),
    (3, "pause"),
    (4, "volume"),
    (5, "video-out-params"),
    (6, "track-list"),
    (7, "speed"),
    (8, "audio-delay"),
    (9, "sub-delay"),
    (10, "filename"),
    (11, "aid"),
    (12, "sid"),
    (13, "mute"),
    (14, "path"),
]

ASPECT_EPSILON = 0.01

ENGINE_ARGS = [
    "--idle=yes",
    "--no-border",
    "--no-osc",
    "--osd-level=0",
    "--keep-open=yes",
    "--force-window=no",
    "--input-default-bindings=no",
    "--input-vo-keyboard=no",
    "--vo=gpu",
    "--hwdec=auto",
    "--panscan=1.0",
    "--image-display-duration=inf",
    "--loop-file=no",
    "--ytdl-raw-options=format=bestvideo+bestaudio/best",
]


class EngineError(Exception):
    pass


class EngineCommandError(EngineError, ValueError):
    pass


class CommandQueueFull(EngineError):
    pass


class ChannelState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def default_ipc_address(pid: Optional[int] = None) -> str:
    pid = os.getpid() if pid is None else pid
    if sys.platform == "win32":
        return f"\\\\.\\pipe\\mpvsocket-{pid}"
    return f"/tmp/nautic-mpv-{pid}.sock"


async def open_channel(address: str):
    """Open the engine control channel: a named pipe on Windows, a unix socket elsewhere."""
    if sys.platform == "win32":
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        transport, _ = await loop.create_pipe_connection(lambda: protocol, address)
        writer = asyncio.StreamWriter(transport, protocol, reader, loop)
        return reader, writer
    return await asyncio.open_unix_connection(address)


def audio_only_filter(image: Path) -> str:
    # lavfi option syntax needs forward slashes and escaped drive colons
    path = str(image).replace("\\", "/").replace(":", "\\:")
    return (
        f"movie='{path}'[logo];[logo]scale=400:-1[small];"
        f"color=c=black:s=1280x720[bg];[bg][small]overlay=(W-w)/2:(H-h)/2[vo]"
    )


class EngineSupervisor:
    def __init__(
        self,
        settings: Settings,
        store: PlayerStateStore,
        ui: UiSink,
        window: Optional[WindowHost] = None,
        ipc_address: Optional[str] = None,
        on_path: Optional[Callable[[Optional[str]], None]] = None,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.ui = ui
        self.window = window
        self.ipc_address = ipc_address or default_ipc_address()
        self.on_path = on_path
        self.on_exit = on_exit

        self.state = ChannelState.DISCONNECTED
        self.process: Optional[asyncio.subprocess.Process] = None
        self._pending: Deque[Dict[str, Any]] = deque()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._tasks: List[asyncio.Task] = []
        self._stopping = False
        self._next_request_id = 100
        self._replies: Dict[int, Callable[[Any], None]] = {}

        self._handlers: Dict[str, Callable[[Any], None]] = {
            "time-pos": self._on_time,
            "duration": self._on_duration,
            "pause": lambda v: self._forward("mpv-paused", "paused", v),
            "volume": self._on_volume,
            "mute": lambda v: self._forward("mpv-mute", "muted", v),
            "speed": lambda v: self.ui.send("mpv-speed", v),
            "audio-delay": lambda v: self.ui.send("mpv-audio-delay", v),
            "sub-delay": lambda v: self.ui.send("mpv-sub-delay", v),
            "track-list": self._on_track_list,
            "aid": self._on_track_selection,
            "sid": self._on_track_selection,
            "video-out-params": self._on_video_params,
            "filename": self._on_filename,
            "path": self._on_path,
        }

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ---------- lifecycle ----------

    async def start(self, host_handle: Optional[int] = None) -> bool:
        if self.running:
            logger.info("Engine already running, skipping start")
            return True

        args = [f"--input-ipc-server={self.ipc_address}", *ENGINE_ARGS]
        if host_handle is not None:
            args.append(f"--wid={host_handle}")

        logger.info(f"Starting engine {self.settings.engine_path} (ipc={self.ipc_address}, wid={host_handle})")
        try:
            self.process = await asyncio.create_subprocess_exec(
                self.settings.engine_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"Engine spawn error: {e}")
            self.ui.send("mpv-error", str(e))
            self.process = None
            return False

        self._stopping = False
        self._spawn(self._watch_process(self.process))
        self._spawn(self._connect_loop(initial_delay=self.settings.engine_connect_delay))
        return True

    async def quit(self) -> None:
        self._stopping = True
        if self.state is ChannelState.CONNECTED:
            self._write({"command": ["quit"]})
        await self._close_channel()
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
        # Commands meant for this session must not reach the next one
        self._pending.clear()

        process, self.process = self.process, None
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        self.state = ChannelState.DISCONNECTED

    # ---------- commands ----------

    def send_command(self, args: List[Any], request_id: Optional[int] = None) -> None:
        message: Dict[str, Any] = {"command": list(args)}
        if request_id is not None:
            message["request_id"] = request_id
        try:
            json.dumps(message)
        except (TypeError, ValueError) as e:
            raise EngineCommandError(f"Command is not JSON encodable: {args!r}") from e

        if self.state is ChannelState.CONNECTED:
            self._write(message)
            return

        if len(self._pending) >= self.settings.pending_command_limit:
            raise CommandQueueFull(f"{len(self._pending)} commands already waiting for the engine")
        logger.debug(f"Channel not ready, queueing command: {message}")
        self._pending.append(message)

    def request_property(self, name: str, callback: Callable[[Any], None]) -> None:
        request_id = self._next_request_id
        self._next_request_id += 1
        self._replies[request_id] = callback
        self.send_command(["get_property", name], request_id=request_id)

    def _write(self, message: Dict[str, Any]) -> None:
        line = json.dumps(message)
        logger.debug(f"[ipc-send] {line}")
        self._writer.write(line.encode("utf-8") + b"\n")

    # ---------- channel ----------

    async def connect(self) -> bool:
        """Single connection attempt. On success the channel is live and pending commands are flushed."""
        if self.state is ChannelState.CONNECTED:
            return True
        self.state = ChannelState.CONNECTING
        try:
            self._reader, self._writer = await open_channel(self.ipc_address)
        except OSError as e:
            logger.debug(f"Engine channel connect failed: {e}")
            self.state = ChannelState.DISCONNECTED
            return False

        self.state = ChannelState.CONNECTED
        logger.info("Connected to engine control channel")
        self.ui.send("mpv-ready")

        for observer_id, name in OBSERVED_PROPERTIES:
            self._write({"command": ["observe_property", observer_id, name]})
        while self._pending:
            self._write(self._pending.popleft())
        try:
            await self._writer.drain()
        except ConnectionError as e:
            logger.warning(f"Engine channel dropped during setup: {e}")
            await self._close_channel()
            return False

        self._spawn(self._read_loop(self._reader))
        return True

    async def _connect_loop(self, initial_delay: float = 0.0) -> None:
        # The engine needs a moment to create its IPC endpoint
        if initial_delay:
            await asyncio.sleep(initial_delay)
        while not self._stopping and self.running and self.state is not ChannelState.CONNECTED:
            if await self.connect():
                return
            await asyncio.sleep(self.settings.engine_retry_interval)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await reader.readline()
            except (ConnectionError, asyncio.IncompleteReadError) as e:
                logger.warning(f"Engine channel read error: {e}")
                break
            if not line:
                break
            self.handle_line(line)

        if reader is not self._reader:
            return
        logger.warning("Engine channel closed")
        await self._close_channel()
        if not self._stopping and self.running:
            self._spawn(self._connect_loop(initial_delay=self.settings.engine_retry_interval))

    async def _close_channel(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        self.state = ChannelState.DISCONNECTED
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _watch_process(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._stopping or process is not self.process:
            return
        logger.error(f"Engine exited unexpectedly with code {code}")
        self.process = None
        await self._close_channel()
        self.ui.send("mpv-error", f"Playback engine exited (code {code})")
        if self.on_exit:
            self.on_exit(code)

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.append(task)
        task.add_done_callback(self._forget_task)
        return task

    def _forget_task(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)

    # ---------- inbound messages ----------

    def handle_line(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except ValueError:
            logger.debug(f"Discarding malformed engine line: {text[:200]}")
            return
        if not isinstance(message, dict):
            return
        try:
            self.handle_message(message)
        except Exception as e:
            logger.warning(f"Discarding engine message that failed to apply: {text[:200]} ({e})", exc_info=True)

    def handle_message(self, message: Dict[str, Any]) -> None:
        request_id = message.get("request_id")
        if isinstance(request_id, int) and request_id in self._replies:
            callback = self._replies.pop(request_id)
            if message.get("error") == "success":
                callback(message.get("data"))
            return

        event = message.get("event")
        if event is None:
            if message.get("error") not in (None, "success"):
                logger.warning(f"Engine rejected command: {message}")
            return

        if event == "property-change":
            name = message.get("name")
            if not isinstance(name, str):
                return
            handler = self._handlers.get(name)
            if handler:
                handler(message.get("data"))
        elif event == "end-file":
            reason = message.get("reason")
            logger.info(f"Engine end-file: {reason}")
            if reason == "error":
                self.ui.send("mpv-error", "Failed to load file")
            elif reason == "eof":
                self.ui.send("mpv-file-ended", {"reason": "eof"})

    # ---------- property handlers ----------

    def _forward(self, channel: str, field: str, value: Any) -> None:
        self.ui.send(channel, value)
        if value is not None:
            self.store.update({field: value})

    def _on_time(self, value: Any) -> None:
        if isinstance(value, (int, float)):
            self._forward("mpv-time", "time", value)

    def _on_duration(self, value: Any) -> None:
        if isinstance(value, (int, float)):
            self._forward("mpv-duration", "duration", value)

    def _on_volume(self, value: Any) -> None:
        if isinstance(value, (int, float)):
            self._forward("mpv-volume", "volume", value)

    def _on_filename(self, value: Any) -> None:
        self.ui.send("mpv-filename", value)
        self.store.update({"filename": value})

    def _on_path(self, value: Any) -> None:
        if self.on_path:
            self.on_path(value)

    def _on_track_selection(self, _value: Any) -> None:
        self.request_property("track-list", self._on_track_list)

    def _on_track_list(self, tracks: Any) -> None:
        if not isinstance(tracks, list):
            return
        self.ui.send("mpv-tracks", tracks)
        self.store.update({"tracks": tracks})
        if tracks:
            self.apply_audio_background(tracks)

    def apply_audio_background(self, tracks: List[Dict[str, Any]]) -> None:
        has_video = any(t.get("type") == "video" for t in tracks if isinstance(t, dict))
        if has_video:
            self.send_command(["set_property", "lavfi-complex", ""])
            return
        logger.info("Audio-only media detected, applying background")
        if self.settings.audio_background is not None:
            self.send_command(["set_property", "lavfi-complex", audio_only_filter(self.settings.audio_background)])
        self.ui.send("mpv-msg", "Audio Mode")

    def _on_video_params(self, params: Any) -> None:
        if not isinstance(params, dict):
            return
        width, height = params.get("w"), params.get("h")
        if isinstance(width, (int, float)) and isinstance(height, (int, float)) and width > 0 and height > 0:
            self.fit_window(width, height)

    def fit_window(self, video_w: int, video_h: int) -> bool:
        """Match the host window to the video aspect ratio, keeping its width."""
        window = self.window
        if window is None or not video_w or not video_h:
            return False
        if window.is_maximized() or window.is_fullscreen():
            logger.debug("Skipping auto-resize while maximized or fullscreen")
            return False

        width, height = window.get_size()
        video_ratio = video_w / video_h
        if height and abs(width / height - video_ratio) < ASPECT_EPSILON:
            return False

        new_height = round(width / video_ratio)
        logger.info(f"Resizing window {width}x{height} -> {width}x{new_height} (ratio {video_ratio:.3f})")
        window.set_aspect_ratio(video_ratio)
        window.set_size(width, new_height)
        return True
