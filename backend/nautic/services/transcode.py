import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
ROLLING_LIST_SIZE = 6


class TranscodeError(Exception):
    pass


class NoSourceFile(TranscodeError):
    pass


class TranscoderNotFound(TranscodeError):
    pass


class TranscodeSpawnError(TranscodeError):
    pass


class TranscodeTimeout(TranscodeError):
    pass


class TranscodePipeline:
    """
    One ffmpeg HLS transcode per session.

    start() replaces any running transcode and returns once the playlist
    manifest exists; segments are served from output_dir afterwards.
    """

    def __init__(
        self,
        transcoder_path: str,
        output_dir: Path,
        poll_interval: float = 0.5,
        timeout: float = 10.0,
    ) -> None:
        self.transcoder_path = transcoder_path
        self.output_dir = Path(output_dir)
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.process: Optional[asyncio.subprocess.Process] = None

    @property
    def playlist_path(self) -> Path:
        return self.output_dir / PLAYLIST_NAME

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def resolve_binary(self) -> Optional[str]:
        if os.path.isfile(self.transcoder_path):
            return self.transcoder_path
        return shutil.which(self.transcoder_path)

    def build_args(self, source: Path, seek_seconds: float, seekable: bool = True) -> List[str]:
        args = [
            "-ss", str(seek_seconds),
            "-i", str(source),

            # Video: H.264 baseline at 480p, capped for mobile links
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-tune", "zerolatency",
            "-profile:v", "baseline",
            "-level", "3.0",
            "-pix_fmt", "yuv420p",
            "-vf", "scale=-2:480",
            "-b:v", "1500k",
            "-maxrate", "2000k",
            "-bufsize", "4000k",
            "-g", "30",
            "-keyint_min", "30",
            "-sc_threshold", "0",

            "-c:a", "aac",
            "-b:a", "128k",
            "-ac", "2",
            "-ar", "44100",

            "-f", "hls",
            "-hls_time", "2",
        ]
        if seekable:
            # Keep every segment so guests can seek backwards
            args += ["-hls_list_size", "0", "-hls_flags", "split_by_time+append_list"]
        else:
            args += ["-hls_list_size", str(ROLLING_LIST_SIZE), "-hls_flags", "split_by_time+delete_segments"]
        args += [
            "-hls_segment_filename", str(self.output_dir / SEGMENT_PATTERN),
            str(self.playlist_path),
        ]
        return args

    def clear_output(self) -> None:
        if not self.output_dir.exists():
            self.output_dir.mkdir(parents=True, exist_ok=True)
            return
        for entry in self.output_dir.iterdir():
            try:
                entry.unlink()
            except OSError as e:
                # Segments still held open by a client are cleaned up next time
                logger.debug(f"Could not delete {entry.name}: {e}")

    async def start(self, source: Optional[Path], seek_seconds: float = 0.0, seekable: bool = True) -> str:
        if source is None or not Path(source).exists():
            raise NoSourceFile("No file loaded")

        await self.stop()
        self.clear_output()

        binary = self.resolve_binary()
        if binary is None:
            logger.error(f"Transcoder not found at: {self.transcoder_path}")
            raise TranscoderNotFound("FFmpeg not available")

        args = self.build_args(Path(source), max(0.0, seek_seconds), seekable)
        logger.info(f"Starting HLS transcode of {source} from {seek_seconds}s into {self.output_dir}")
        logger.debug(f"Transcoder args: {' '.join(args)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"Transcoder spawn error: {e}")
            raise TranscodeSpawnError(str(e)) from e

        try:
            await asyncio.wait_for(self._wait_for_playlist(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Transcoding timeout after {self.timeout}s")
            await self.stop()
            raise TranscodeTimeout("Transcoding timeout") from None
        return PLAYLIST_NAME

    async def _wait_for_playlist(self) -> None:
        while not self.playlist_path.exists():
            await asyncio.sleep(self.poll_interval)

    async def stop(self) -> None:
        process, self.process = self.process, None
        if process is None or process.returncode is not None:
            return
        logger.info("Stopping transcode")
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
