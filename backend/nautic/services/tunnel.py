import asyncio
import logging
import os
import re
import shutil
from typing import List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

TUNNEL_URL_PATTERN = re.compile(r"https://[a-z0-9-]+\.trycloudflare\.com", re.IGNORECASE)


class TunnelResult(BaseModel):
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None


class TunnelStatus(BaseModel):
    active: bool
    url: Optional[str] = None
    error: Optional[str] = None
    starting: bool = False


class TunnelManager:
    """Cloudflare quick tunnel exposing the local server on a public URL."""

    def __init__(self, binary: str = "cloudflared", timeout: float = 30.0, args: Optional[List[str]] = None) -> None:
        self.binary = binary
        self.timeout = timeout
        # {port} is substituted at start
        self.args = args or ["tunnel", "--url", "http://localhost:{port}"]
        self.process: Optional[asyncio.subprocess.Process] = None
        self.url: Optional[str] = None
        self.last_error: Optional[str] = None
        self.starting = False
        self._found: Optional[asyncio.Future] = None
        self._tasks: List[asyncio.Task] = []

    def resolve_binary(self) -> Optional[str]:
        if os.path.isfile(self.binary):
            return self.binary
        return shutil.which(self.binary)

    def is_installed(self) -> bool:
        return self.resolve_binary() is not None

    @property
    def active(self) -> bool:
        return self.process is not None and self.url is not None

    def status(self) -> TunnelStatus:
        return TunnelStatus(active=self.active, url=self.url, error=self.last_error, starting=self.starting)

    async def start(self, local_port: int) -> TunnelResult:
        if self.process is not None:
            if self.url:
                return TunnelResult(success=True, url=self.url)
            return TunnelResult(success=False, error="Tunnel is already starting")

        binary = self.resolve_binary()
        if binary is None:
            logger.error(f"cloudflared not found at: {self.binary}")
            return TunnelResult(success=False, error="cloudflared not found. Installation may be corrupted.")

        self.starting = True
        self.last_error = None
        args = [a.replace("{port}", str(local_port)) for a in self.args]
        logger.info(f"Starting tunnel for port {local_port}")
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Tunnel process error: {e}")
            self.starting = False
            self.last_error = str(e)
            return TunnelResult(success=False, error=self.last_error)

        self.process = process
        self._found = asyncio.get_running_loop().create_future()
        self._tasks = [
            asyncio.ensure_future(self._scan(process.stdout)),
            asyncio.ensure_future(self._scan(process.stderr)),
            asyncio.ensure_future(self._watch(process)),
        ]

        try:
            url = await asyncio.wait_for(asyncio.shield(self._found), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.starting = False
            self.last_error = f"Tunnel startup timeout ({self.timeout:g}s)"
            logger.warning(self.last_error)
            return TunnelResult(success=False, error=self.last_error)

        if url is None:
            return TunnelResult(success=False, error=self.last_error)
        return TunnelResult(success=True, url=url)

    async def _scan(self, stream: asyncio.StreamReader) -> None:
        # Keep draining after the URL shows up so the pipe never fills
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            logger.debug(f"[tunnel] {text}")
            match = TUNNEL_URL_PATTERN.search(text)
            if match and self._found is not None and not self._found.done():
                self.url = match.group(0)
                self.starting = False
                logger.info(f"Tunnel URL: {self.url}")
                self._found.set_result(self.url)
            elif self.url is None and ("error" in text.lower() or "failed" in text.lower()):
                self.last_error = "Tunnel connection failed"

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        logger.info(f"Tunnel process closed with code: {code}")
        if process is not self.process:
            return
        self.process = None
        self.url = None
        self.starting = False
        if self._found is not None and not self._found.done():
            self.last_error = f"Tunnel process exited (code {code})"
            self._found.set_result(None)

    async def stop(self) -> None:
        process, self.process = self.process, None
        self.url = None
        self.last_error = None
        self.starting = False
        if self._found is not None and not self._found.done():
            self._found.set_result(None)
        self._found = None
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        if process is None or process.returncode is not None:
            return
        logger.info("Stopping tunnel")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
