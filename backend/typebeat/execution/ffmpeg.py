"""
FFmpeg transcoding engine.

Runs the system ffmpeg binary through asyncio subprocesses inside a
private working directory that plays the role of the engine filesystem.

Design rules:
- One working directory per loaded engine, removed on terminate()
- File names are bare names inside that directory, never paths
- One subprocess at a time; exec() is not reentrant
- Progress parsed from stderr and pushed to listeners
"""

import asyncio
import logging
import os
import shutil
import tempfile
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

from .base import ProgressEvent, ProgressListener, TranscodeEngine
from .progress import ProgressParser

logger = logging.getLogger(__name__)

# Lines of stderr kept for failure reports
LOG_TAIL_LINES = 40


class FFmpegEngine(TranscodeEngine):
    """
    FFmpeg-based transcoding engine.

    load(source) accepts a binary name resolved on PATH or an absolute path.
    """

    def __init__(self):
        self._binary: Optional[str] = None
        self._workdir: Optional[Path] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._listeners: List[ProgressListener] = []
        self._log_tail: Deque[str] = deque(maxlen=LOG_TAIL_LINES)

    @property
    def name(self) -> str:
        return "FFmpeg"

    @property
    def loaded(self) -> bool:
        return self._binary is not None and self._workdir is not None

    @property
    def workdir(self) -> Optional[Path]:
        return self._workdir

    @property
    def last_log(self) -> str:
        return "\n".join(self._log_tail)

    @staticmethod
    def _resolve_binary(source: str) -> Optional[str]:
        """Find an executable for `source` (PATH lookup or explicit path)."""
        if os.path.isabs(source):
            if os.path.isfile(source) and os.access(source, os.X_OK):
                return source
            return None
        return shutil.which(source)

    async def load(self, source: str) -> None:
        binary = self._resolve_binary(source)
        if binary is None:
            raise FileNotFoundError(f"ffmpeg not found at {source}")

        process = await asyncio.create_subprocess_exec(
            binary, "-hide_banner", "-version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise RuntimeError(
                f"{binary} -version exited with code {process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )

        self._binary = binary
        self._workdir = Path(tempfile.mkdtemp(prefix="typebeat-engine-"))
        version_line = stdout.decode(errors="replace").splitlines()[0] if stdout else "unknown"
        logger.info(f"[FFmpeg] Loaded {binary} ({version_line}), workdir {self._workdir}")

    def _require_loaded(self) -> Path:
        if not self.loaded or not self._workdir.is_dir():
            raise RuntimeError("FFmpeg engine is not loaded")
        return self._workdir

    def _path_for(self, name: str) -> Path:
        workdir = self._require_loaded()
        if not name or Path(name).name != name or name in (".", ".."):
            raise ValueError(f"Invalid engine file name: {name!r}")
        return workdir / name

    async def list_files(self) -> List[str]:
        workdir = self._require_loaded()
        return sorted(entry.name for entry in workdir.iterdir() if entry.is_file())

    async def write_file(self, name: str, data: bytes) -> None:
        path = self._path_for(name)
        await asyncio.to_thread(path.write_bytes, data)

    async def read_file(self, name: str) -> bytes:
        path = self._path_for(name)
        if not path.is_file():
            raise FileNotFoundError(name)
        return await asyncio.to_thread(path.read_bytes)

    async def delete_file(self, name: str) -> None:
        path = self._path_for(name)
        path.unlink()

    @staticmethod
    def _expected_duration(args: List[str]) -> Optional[float]:
        """Output duration from a -t argument, if present."""
        for flag, value in zip(args, args[1:]):
            if flag == "-t":
                try:
                    return float(value)
                except ValueError:
                    return None
        return None

    async def exec(self, args: List[str]) -> int:
        workdir = self._require_loaded()
        if self._process is not None:
            raise RuntimeError("FFmpeg engine is already running a command")

        cmd = [self._binary, "-hide_banner", "-nostdin", *args]
        logger.info(f"[FFmpeg] Executing: {' '.join(cmd)}")

        self._log_tail.clear()
        parser = ProgressParser(duration=self._expected_duration(args))

        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(workdir),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        self._process = process
        logger.debug(f"[FFmpeg] Started PID {process.pid}")

        try:
            await self._pump_stderr(process, parser)
            exit_code = await process.wait()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            self._process = None

        logger.info(f"[FFmpeg] PID {process.pid} exited with code {exit_code}")
        return exit_code

    async def _pump_stderr(self, process: asyncio.subprocess.Process, parser: ProgressParser) -> None:
        # Progress lines end with \r, regular lines with \n
        buffer = ""
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            buffer += chunk.decode(errors="replace").replace("\r", "\n")
            *lines, buffer = buffer.split("\n")
            for line in lines:
                self._handle_line(line, parser)
        if buffer:
            self._handle_line(buffer, parser)

    def _handle_line(self, line: str, parser: ProgressParser) -> None:
        line = line.strip()
        if not line:
            return
        event = parser.parse_line(line)
        if event is None:
            self._log_tail.append(line)
            return
        self._emit(event)

    def _emit(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"[FFmpeg] Progress listener raised: {e}")

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def clear_progress_listeners(self) -> None:
        self._listeners.clear()

    def terminate(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            logger.info(f"[FFmpeg] Killing PID {process.pid}")
            try:
                process.kill()
            except ProcessLookupError:
                pass  # Process already dead

        self._listeners.clear()
        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
        self._workdir = None
        self._binary = None
