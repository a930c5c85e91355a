import asyncio
import errno
import logging
import re
import socket
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import socketio
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError

from nautic import __version__
from nautic.config import Settings
from nautic.models.party import MediaDescriptor
from nautic.models.player import PlayerState
from nautic.services import files, media, network
from nautic.services.engine import EngineError, EngineSupervisor
from nautic.services.party import WatchPartyManager
from nautic.services.state_store import PlayerStateStore
from nautic.services.streaming import RangeNotSatisfiable, iter_file, parse_range
from nautic.services.transcode import (
    NoSourceFile,
    TranscodePipeline,
    TranscodeSpawnError,
    TranscodeTimeout,
    TranscoderNotFound,
)
from nautic.services.tunnel import TunnelManager
from nautic.shell import HeadlessWindow, LoggingUiSink, MemoryPreferences, Preferences, UiSink, WindowHost

logger = logging.getLogger(__name__)

ROOM_PATH = re.compile(r"^NP-[A-Z0-9-]+$")
VOLUME_STEP = 5


class CORSStaticFiles(StaticFiles):
    async def get_response(self, path: str, scope):
        response = await super().get_response(path, scope)
        response.headers["Access-Control-Allow-Origin"] = "*"
        return response


class ControlServer:
    """
    Remote control and watch party server for one player instance.

    Owns the player state, the engine supervisor, the transcode pipeline, the
    tunnel and the party registry; nothing here is module-global, so several
    servers can coexist in one process.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        ui: Optional[UiSink] = None,
        window: Optional[WindowHost] = None,
        preferences: Optional[Preferences] = None,
        engine: Optional[EngineSupervisor] = None,
        transcoder: Optional[TranscodePipeline] = None,
        tunnel: Optional[TunnelManager] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.ui = ui or LoggingUiSink()
        self.window = window or HeadlessWindow()
        self.preferences = preferences or MemoryPreferences()

        self.port = self.settings.port
        self.host_ip = "127.0.0.1"
        self.ips: List[str] = []

        self.store = PlayerStateStore(PlayerState(device_name=self.settings.device_name))
        self.engine = engine or EngineSupervisor(self.settings, self.store, self.ui, self.window)
        self.engine.on_path = self._on_engine_path
        self.engine.on_exit = self._on_engine_exit
        self.transcoder = transcoder or TranscodePipeline(
            self.settings.transcoder_path,
            self.settings.hls_dir,
            poll_interval=self.settings.transcode_poll_interval,
            timeout=self.settings.transcode_timeout,
        )
        self.tunnel = tunnel or TunnelManager(self.settings.tunnel_path, timeout=self.settings.tunnel_timeout)

        self.current_file: Optional[Path] = None
        self.remote_clients = 0
        self.watch_party_sids: Set[str] = set()
        self.tunnel_sids: Set[str] = set()

        origins = self.settings.allowed_origins
        self.sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=origins if origins != ["*"] else "*")
        self.party = WatchPartyManager(
            emit=self.sio.emit,
            address=lambda: (self.host_ip, self.port),
            tunnel=self.tunnel,
            mark_watch_party=self.mark_watch_party,
            max_guests=self.settings.max_guests,
            drift_tolerance_ms=self.settings.drift_tolerance_ms,
        )

        # Every broadcast goes through one queue so clients see them in order
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self.store.subscribe(self._on_state_change)

        self.http = self._create_http_app()
        self._register_socket_handlers()
        self.asgi = socketio.ASGIApp(self.sio, self.http)

    # ---------- broadcasting ----------

    def _enqueue(self, event: str, data: Any = None) -> None:
        self._outbox.put_nowait((event, data))

    def _on_state_change(self, partial: Dict[str, Any]) -> None:
        self._enqueue("state-update", partial)

    def broadcast_full_state(self) -> None:
        self._enqueue("full-state", self.store.snapshot().wire())

    def sync_resume_state(self, state: Any) -> None:
        self._enqueue("resume-prompt", state)

    async def _broadcaster(self) -> None:
        while True:
            event, data = await self._outbox.get()
            try:
                await self.sio.emit(event, data)
            except Exception as e:
                logger.error(f"Broadcast of {event} failed: {e}", exc_info=True)
            finally:
                self._outbox.task_done()

    async def flush(self) -> None:
        await self._outbox.join()

    def heartbeat_tick(self) -> bool:
        """Lightweight time-only update so remote seek bars keep moving."""
        if self.remote_clients <= 0:
            return False
        state = self.store.snapshot()
        if state.paused or state.duration <= 0:
            return False
        self._enqueue("state-update", {"time": state.time})
        return True

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            self.heartbeat_tick()

    # ---------- client accounting ----------

    def _set_remote_clients(self, count: int, channel: str) -> None:
        self.remote_clients = max(0, count)
        self.store.update({"connectedClients": self.remote_clients})
        self.ui.send(channel, {"count": self.remote_clients})

    def mark_watch_party(self, sid: str) -> None:
        """Watch party sockets are not remote controls; undo their connect count once."""
        if sid in self.watch_party_sids:
            return
        self.watch_party_sids.add(sid)
        if self.remote_clients > 0:
            self._set_remote_clients(self.remote_clients - 1, "remote-client-disconnected")

    # ---------- current file ----------

    async def set_current_file(self, path: Optional[Path], reset_state: bool = True) -> None:
        if path is not None and path == self.current_file:
            return
        self.current_file = path
        logger.info(f"Current file set to: {path}")
        await self.transcoder.stop()

        if path is None and reset_state:
            self.store.reset()

        info = media.classify(path)
        if path is not None:
            info["filename"] = self.store.get("filename")
        self._enqueue("stream-available", info)

    def _on_engine_path(self, value: Optional[str]) -> None:
        if not value:
            self._spawn(self.set_current_file(None))
        elif media.is_url(value):
            self._spawn(self.set_current_file(None, reset_state=False))
        else:
            self._spawn(self.set_current_file(Path(value)))

    def _on_engine_exit(self, code: Optional[int]) -> None:
        self._enqueue("engine-error", {"code": code, "message": "Playback engine stopped"})

    async def load_file(self, target: str) -> None:
        if not target:
            return
        if media.is_url(target):
            # Remote URLs cannot be streamed to phones
            await self.set_current_file(None)
            if media.is_youtube_playlist(target):
                items = await media.extract_playlist(target)
                if items:
                    self.ui.send("playlist-loaded", items)
                    target = items[0]["url"]
            if media.is_youtube_url(target):
                self._spawn(self._publish_youtube_metadata(target))
        else:
            await self.set_current_file(Path(target))
        self.engine.send_command(["loadfile", target, "replace"])

    async def _publish_youtube_metadata(self, url: str) -> None:
        metadata = await media.resolve_youtube(url)
        if metadata:
            self.ui.send("youtube-metadata", metadata)

    # ---------- commands ----------

    async def handle_command(self, action: Optional[str], value: Any = None) -> bool:
        send = self.engine.send_command
        try:
            if action == "play":
                send(["set_property", "pause", False])
            elif action == "pause":
                send(["set_property", "pause", True])
            elif action == "toggle":
                send(["cycle", "pause"])
            elif action == "seek":
                send(["seek", float(value), "relative"])
            elif action == "seek-to":
                send(["seek", float(value), "absolute", "exact"])
            elif action == "volume":
                if value == "up":
                    send(["add", "volume", VOLUME_STEP])
                elif value == "down":
                    send(["add", "volume", -VOLUME_STEP])
                else:
                    send(["set_property", "volume", float(value)])
            elif action == "mute":
                send(["cycle", "mute"])
            elif action == "toggle-fullscreen":
                self.window.toggle_fullscreen()
            elif action == "init":
                self.broadcast_full_state()
            elif action == "loadfile":
                logger.info(f"Loading file from remote: {value}")
                await self.load_file(str(value))
            elif action == "resume":
                send(["seek", float(value), "absolute", "exact"])
                self.ui.send("remote-action", {"action": "resume-confirmed"})
            elif action == "dismiss-resume":
                self.ui.send("remote-action", {"action": "resume-dismissed"})
            elif action == "quit":
                logger.info("Remote requested shutdown")
                await self.request_shutdown()
            elif action == "command":
                if not isinstance(value, list):
                    raise ValueError("raw command must be a list")
                send(value)
            else:
                logger.warning(f"Unknown remote command: {action}")
                return False
        except (TypeError, ValueError, EngineError) as e:
            logger.warning(f"Rejected remote command {action}={value!r}: {e}")
            return False
        return True

    async def request_shutdown(self) -> None:
        logger.info("Sending shutdown acknowledgment to clients")
        await self.sio.emit("shutdown-confirmed")
        await self.engine.quit()
        self.window.quit()

    # ---------- socket handlers ----------

    def _register_socket_handlers(self) -> None:
        handlers = {
            "connect": self.on_connect,
            "disconnect": self.on_disconnect,
            "cmd": self.on_cmd,
            "remote-command": self.on_cmd,
            "request-state": self.on_request_state,
            "ping-remote": self.on_ping,
            "get-sys-info": self.on_get_sys_info,
            "toggle-autolaunch": self.on_toggle_autolaunch,
            "party:create": self.on_party_create,
            "party:join": self.on_party_join,
            "party:leave": self.on_party_leave,
            "party:close": self.on_party_close,
            "party:action": self.on_party_action,
            "party:heartbeat": self.on_party_heartbeat,
            "party:info": self.on_party_info,
        }
        for event, handler in handlers.items():
            self.sio.on(event, handler)

    async def on_connect(self, sid: str, environ: Dict[str, Any], auth: Any = None) -> None:
        logger.info(f"Client {sid} connected")
        if environ.get("HTTP_CF_CONNECTING_IP"):
            self.tunnel_sids.add(sid)
        self.ui.send("remote-wake")
        self._set_remote_clients(self.remote_clients + 1, "remote-client-connected")

        state = self.store.snapshot()
        await self.sio.emit("full-state", state.wire(), to=sid)
        await self.sio.emit("status", {"connected": True, "deviceName": state.device_name}, to=sid)

    async def on_disconnect(self, sid: str, reason: Any = None) -> None:
        try:
            logger.info(f"Client {sid} disconnected ({reason})")
            self.tunnel_sids.discard(sid)
            if sid in self.watch_party_sids:
                self.watch_party_sids.discard(sid)
            else:
                self._set_remote_clients(self.remote_clients - 1, "remote-client-disconnected")
            await self.party.leave_room(sid)
        except Exception as e:
            logger.error(f"Error in disconnect: {e}", exc_info=True)

    async def on_cmd(self, sid: str, data: Any) -> None:
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed command from {sid}: {data!r}")
            return
        logger.info(f"Command from {sid}: {data}")
        await self.handle_command(data.get("action"), data.get("value"))

    async def on_request_state(self, sid: str, data: Any = None) -> None:
        await self.sio.emit("full-state", self.store.snapshot().wire(), to=sid)

    async def on_ping(self, sid: str, timestamp: Any = None) -> None:
        await self.sio.emit("pong-remote", timestamp, to=sid)

    async def on_get_sys_info(self, sid: str, data: Any = None) -> None:
        await self.sio.emit("sys-info", self._sys_info(), to=sid)

    async def on_toggle_autolaunch(self, sid: str, enable: Any) -> None:
        self.preferences.set("autoLaunch", bool(enable))
        await self.sio.emit("sys-info", self._sys_info(), to=sid)

    def _sys_info(self) -> Dict[str, Any]:
        return {"autoLaunch": bool(self.preferences.get("autoLaunch", False)), "version": __version__}

    async def on_party_create(self, sid: str, data: Any) -> Dict[str, Any]:
        try:
            data = data if isinstance(data, dict) else {}
            descriptor = MediaDescriptor.model_validate(data)
            return await self.party.create_room(
                sid,
                data.get("name") or "Host",
                descriptor,
                enable_internet=bool(data.get("enableInternet")),
            )
        except ValidationError as e:
            logger.warning(f"Invalid party:create from {sid}: {e}")
            return {"success": False, "error": "Invalid party request"}
        except Exception as e:
            logger.error(f"Error in party:create: {e}", exc_info=True)
            return {"success": False, "error": "Internal server error"}

    async def on_party_join(self, sid: str, data: Any) -> Dict[str, Any]:
        try:
            data = data if isinstance(data, dict) else {}
            return await self.party.join_room(
                str(data.get("roomId", "")).strip().upper(),
                sid,
                data.get("name") or "Guest",
                remote=sid in self.tunnel_sids,
            )
        except Exception as e:
            logger.error(f"Error in party:join: {e}", exc_info=True)
            return {"success": False, "error": "Internal server error"}

    async def on_party_leave(self, sid: str, data: Any = None) -> None:
        await self.party.leave_room(sid)

    async def on_party_close(self, sid: str, data: Any = None) -> None:
        await self.party.close_hosted_room(sid)

    async def on_party_action(self, sid: str, action: Any) -> None:
        room = self.party.room_for(sid)
        if not room or not isinstance(action, dict):
            return
        await self.party.broadcast_action(room.id, sid, action)

    async def on_party_heartbeat(self, sid: str, data: Any) -> None:
        room = self.party.room_for(sid)
        if not room or not isinstance(data, dict):
            return
        try:
            current_time = float(data.get("time", 0))
        except (TypeError, ValueError):
            return
        await self.party.heartbeat(room.id, sid, current_time, bool(data.get("paused")))

    async def on_party_info(self, sid: str, room_id: Any) -> Optional[Dict[str, Any]]:
        info = self.party.room_info(str(room_id))
        return info.model_dump(by_alias=True) if info else None

    # ---------- HTTP ----------

    def _create_http_app(self) -> FastAPI:
        app = FastAPI(title="Nautic Remote", version=__version__)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.get("/stream-info")
        async def stream_info():
            path = self.current_file
            if path is None or not path.exists():
                return JSONResponse({"error": "No file loaded", "available": False}, status_code=404)
            state = self.store.snapshot()
            return {
                **media.classify(path),
                "filename": state.filename,
                "size": path.stat().st_size,
                "duration": state.duration,
                "currentTime": state.time,
                "paused": state.paused,
            }

        @app.get("/stream")
        async def stream(request: Request):
            path = self.current_file
            if path is None or not path.exists():
                return JSONResponse({"error": "No file loaded", "available": False}, status_code=404)

            info = media.classify(path)
            if not info["native"]:
                return JSONResponse(
                    {"error": "Format not supported for browser playback", **info},
                    status_code=415,
                )

            size = path.stat().st_size
            headers = {"Accept-Ranges": "bytes", "Access-Control-Allow-Origin": "*"}
            content_type = media.mime_type(path)

            range_header = request.headers.get("range")
            if range_header:
                try:
                    start, end = parse_range(range_header, size)
                except RangeNotSatisfiable:
                    return Response(status_code=416, headers={**headers, "Content-Range": f"bytes */{size}"})
                headers["Content-Range"] = f"bytes {start}-{end}/{size}"
                headers["Content-Length"] = str(end - start + 1)
                return StreamingResponse(iter_file(path, start, end), status_code=206, media_type=content_type, headers=headers)

            headers["Content-Length"] = str(size)
            return StreamingResponse(iter_file(path, 0, size - 1), media_type=content_type, headers=headers)

        @app.get("/stream-transcode")
        async def stream_transcode(t: Optional[str] = None):
            try:
                seek = float(t) if t else 0.0
            except ValueError:
                seek = 0.0
            try:
                name = await self.transcoder.start(self.current_file, seek)
            except NoSourceFile as e:
                return JSONResponse({"error": str(e)}, status_code=404)
            except TranscoderNotFound as e:
                return JSONResponse({"error": str(e)}, status_code=503)
            except (TranscodeSpawnError, TranscodeTimeout) as e:
                return JSONResponse({"error": str(e)}, status_code=500)
            return {"url": f"/hls/{name}", "ready": True}

        @app.get("/api/defaults")
        async def defaults():
            return files.default_locations()

        @app.get("/api/drives")
        async def drives():
            return await asyncio.get_running_loop().run_in_executor(None, files.list_drives)

        @app.get("/api/files")
        async def list_files(path: Optional[str] = None):
            if not path:
                return JSONResponse({"error": "Path is required"}, status_code=400)
            try:
                return await asyncio.get_running_loop().run_in_executor(None, files.list_directory, path)
            except FileNotFoundError:
                return JSONResponse({"error": "Path not found"}, status_code=404)
            except OSError as e:
                logger.error(f"Read dir error: {e}")
                return JSONResponse({"error": "Failed to read directory"}, status_code=500)

        self.settings.hls_dir.mkdir(parents=True, exist_ok=True)
        app.mount("/hls", CORSStaticFiles(directory=str(self.settings.hls_dir)), name="hls")

        remote_dir = self.settings.remote_dir
        if remote_dir is not None and remote_dir.is_dir():
            self._mount_remote_app(app, remote_dir)
        return app

    def _mount_remote_app(self, app: FastAPI, remote_dir: Path) -> None:
        root = remote_dir.resolve()

        @app.get("/")
        async def remote_index():
            return FileResponse(str(root / "index.html"))

        @app.get("/{name}")
        async def remote_page(name: str):
            # Room links (/NP-ABCD-1234) open the watch party page
            if ROOM_PATH.match(name):
                return FileResponse(str(root / "party.html"))
            candidate = (root / name).resolve()
            if candidate.parent != root or not candidate.is_file():
                raise HTTPException(status_code=404, detail="Not found")
            return FileResponse(str(candidate))

        app.mount("/", StaticFiles(directory=str(root)), name="remote")

    # ---------- lifecycle ----------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.append(task)
        task.add_done_callback(self._forget_task)
        return task

    def _forget_task(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)

    def bind(self) -> socket.socket:
        """Bind the listening socket, walking up from the configured port while it is taken."""
        port = self.settings.port
        for _ in range(self.settings.port_attempts):
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            if sys.platform != "win32":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.settings.host, port))
            except OSError as e:
                sock.close()
                if e.errno != errno.EADDRINUSE:
                    raise
                logger.info(f"Port {port} busy, retrying on {port + 1}")
                port += 1
                continue
            self.port = port
            return sock
        raise OSError(
            errno.EADDRINUSE,
            f"No free port between {self.settings.port} and {port - 1}",
        )

    async def startup(self) -> None:
        loop = asyncio.get_running_loop()
        self.ips = await loop.run_in_executor(None, network.best_ips)
        self.host_ip = self.ips[0]
        self._spawn(self._broadcaster())
        self._spawn(self._heartbeat_loop())
        logger.info(f"Server running at http://{self.settings.host}:{self.port}")
        self.ui.send("remote-server-ready", {
            "ips": self.ips,
            "port": self.port,
            "url": f"http://{self.host_ip}:{self.port}",
        })

    async def shutdown(self) -> None:
        for room_id in list(self.party.rooms):
            await self.party.close_room(room_id, "Player closed")
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        await self.transcoder.stop()
        await self.tunnel.stop()
        self.remote_clients = 0

    async def serve(self) -> None:
        sock = self.bind()
        config = uvicorn.Config(self.asgi, lifespan="off", log_level="info")
        server = uvicorn.Server(config)
        await self.startup()
        try:
            await server.serve(sockets=[sock])
        finally:
            await self.shutdown()


def create_app(settings: Optional[Settings] = None) -> socketio.ASGIApp:
    return ControlServer(settings).asgi
