import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Any, List, Optional

import pytest

from nautic.config import Settings
from nautic.services.tunnel import TunnelResult


class RecordingUi:
    def __init__(self):
        self.events = []

    def send(self, channel, payload=None):
        self.events.append((channel, payload))

    def channels(self):
        return [channel for channel, _ in self.events]

    def payloads(self, channel):
        return [payload for c, payload in self.events if c == channel]


class RecordingEmitter:
    """Stands in for AsyncServer.emit."""

    def __init__(self):
        self.calls = []

    async def __call__(self, event, data=None, to=None, **kwargs):
        self.calls.append((event, data, to))

    def sent_to(self, sid):
        return [(event, data) for event, data, to in self.calls if to == sid]

    def events(self, name):
        return [(data, to) for event, data, to in self.calls if event == name]


class FakeEngine:
    def __init__(self):
        self.commands: List[List[Any]] = []
        self.on_path = None
        self.on_exit = None
        self.started_with: Optional[int] = None
        self.quit_called = False

    def send_command(self, args, request_id=None):
        self.commands.append(list(args))

    async def start(self, host_handle=None):
        self.started_with = host_handle
        return True

    async def quit(self):
        self.quit_called = True


class FakeTunnel:
    def __init__(self, url=None, error="cloudflared not found"):
        self.url = url
        self.error = error
        self.started = []
        self.stopped = 0

    async def start(self, port):
        self.started.append(port)
        if self.url:
            return TunnelResult(success=True, url=self.url)
        return TunnelResult(success=False, error=self.error)

    async def stop(self):
        self.stopped += 1


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def settings(tmp_path):
    return Settings(
        host="127.0.0.1",
        data_dir=tmp_path / "data",
        remote_dir=None,
        audio_background=None,
        engine_connect_delay=0.0,
        engine_retry_interval=0.05,
        transcode_poll_interval=0.05,
    )


@pytest.fixture
def ui():
    return RecordingUi()


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def ipc_path():
    # Unix socket paths are limited to ~100 chars, tmp_path can be longer
    directory = tempfile.mkdtemp(prefix="np")
    yield os.path.join(directory, "mpv.sock")
    shutil.rmtree(directory, ignore_errors=True)
