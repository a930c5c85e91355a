import os
import tempfile
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name)
    return Path(value) if value else None


def _default_data_dir() -> Path:
    value = os.getenv("NAUTIC_DATA_DIR")
    if value:
        return Path(value)
    return Path(tempfile.gettempdir()) / "nautic"


class Settings(BaseModel):
    host: str = Field(default_factory=lambda: os.getenv("NAUTIC_HOST", "0.0.0.0"))
    port: int = Field(default_factory=lambda: int(os.getenv("NAUTIC_PORT", "5678")))
    # How many consecutive ports to try before giving up
    port_attempts: int = Field(default_factory=lambda: int(os.getenv("NAUTIC_PORT_ATTEMPTS", "20")))
    allowed_origins: List[str] = Field(default_factory=lambda: os.getenv("ALLOWED_ORIGINS", "*").split(","))

    device_name: str = Field(default_factory=lambda: os.getenv("NAUTIC_DEVICE_NAME", "NauticPlayer PC"))
    data_dir: Path = Field(default_factory=_default_data_dir)
    remote_dir: Optional[Path] = Field(default_factory=lambda: _env_path("NAUTIC_REMOTE_DIR"))

    # External binaries
    engine_path: str = Field(default_factory=lambda: os.getenv("MPV_PATH", "mpv"))
    transcoder_path: str = Field(default_factory=lambda: os.getenv("FFMPEG_PATH", "ffmpeg"))
    tunnel_path: str = Field(default_factory=lambda: os.getenv("CLOUDFLARED_PATH", "cloudflared"))
    audio_background: Optional[Path] = Field(default_factory=lambda: _env_path("NAUTIC_AUDIO_BACKGROUND"))

    # Timing constants kept compatible with the desktop player
    heartbeat_interval: float = 3.0
    engine_connect_delay: float = 1.0
    engine_retry_interval: float = 2.0
    pending_command_limit: int = 1024
    transcode_poll_interval: float = 0.5
    transcode_timeout: float = 10.0
    tunnel_timeout: float = 30.0

    # Watch party
    max_guests: int = 5
    drift_tolerance_ms: int = 2000

    @property
    def hls_dir(self) -> Path:
        return self.data_dir / "hls-stream"
