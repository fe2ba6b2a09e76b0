"""
Progress parsing and token-gated progress relay.

FFmpeg outputs progress to stderr in this format:
    frame=   24 fps= 12 q=28.0 size=       0kB time=00:00:01.00 bitrate=   0.0kbits/s

ProgressParser turns those lines into ProgressEvent values.

ProgressRelay forwards events to the job that currently owns the engine.
Every job gets a fresh opaque token when it takes the engine; listeners
are bound to the token they were created for, and the relay drops any
event whose token is not the currently valid one. A late event from a
previous job can therefore never move the next job's progress.
"""

import logging
import math
import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .base import ProgressEvent, ProgressListener

logger = logging.getLogger(__name__)


# Matches: time=00:00:01.00 or time=00:01:23.45
TIME_PATTERN = re.compile(r'time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})')

# Matches: Duration: 00:03:12.48
DURATION_PATTERN = re.compile(r'Duration:\s*(\d{2}):(\d{2}):(\d{2})\.(\d{2})')

# Raw engine events are capped here; 100 is reserved for verified read-back
RELAY_CEILING = 99


def _to_seconds(match: "re.Match[str]") -> float:
    hours = int(match.group(1))
    minutes = int(match.group(2))
    seconds = int(match.group(3))
    centiseconds = int(match.group(4))
    return hours * 3600 + minutes * 60 + seconds + centiseconds / 100.0


class ProgressParser:
    """
    Parse FFmpeg stderr output for progress information.

    Usage:
        parser = ProgressParser(duration=120.0)
        for line in ffmpeg_stderr:
            event = parser.parse_line(line)
            if event:
                emit(event)

    When no duration is known up front, the first "Duration:" line sets it.
    """

    def __init__(self, duration: Optional[float] = None):
        self.duration = duration if duration and duration > 0 else None
        self._last_seconds = 0.0

    def parse_line(self, line: str) -> Optional[ProgressEvent]:
        """
        Parse a single line of FFmpeg stderr output.

        Returns:
            ProgressEvent if the line carried a position, None otherwise
        """
        if self.duration is None:
            duration_match = DURATION_PATTERN.search(line)
            if duration_match:
                parsed = _to_seconds(duration_match)
                if parsed > 0:
                    self.duration = parsed
                return None

        time_match = TIME_PATTERN.search(line)
        if not time_match:
            return None

        current = _to_seconds(time_match)
        self._last_seconds = current

        if not self.duration:
            return ProgressEvent(ratio=0.0, seconds=current)

        return ProgressEvent(ratio=min(1.0, current / self.duration), seconds=current)

    @property
    def last_seconds(self) -> float:
        return self._last_seconds


ProgressSink = Callable[[int], None]


@dataclass
class _TokenState:
    job_id: str
    sink: ProgressSink
    last_value: int = 0
    last_emit: Optional[float] = None


class ProgressRelay:
    """
    Token-gated forwarding of engine progress to job progress.

    - activate() mints the token for the job that now owns the engine
    - listener_for() returns an engine listener bound to that token
    - invalidate() retires the token at handoff release

    Accepted values are clamped to [0, 99], never go backwards, and are
    throttled to one update per `min_interval` seconds.
    """

    def __init__(
        self,
        min_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._current_token: Optional[str] = None
        self._states: Dict[str, _TokenState] = {}
        self.discarded_count = 0

    @property
    def current_token(self) -> Optional[str]:
        return self._current_token

    def activate(self, job_id: str, sink: ProgressSink) -> str:
        """
        Mint and publish a fresh token for `job_id`.

        Any previously valid token stops being valid immediately.
        """
        if self._current_token is not None:
            self.invalidate(self._current_token)

        token = uuid.uuid4().hex
        self._states[token] = _TokenState(job_id=job_id, sink=sink)
        self._current_token = token
        logger.debug(f"[Relay] Token {token[:8]} active for job {job_id}")
        return token

    def invalidate(self, token: Optional[str]) -> None:
        """Retire a token. Unknown or already retired tokens are ignored."""
        if token is None:
            return
        self._states.pop(token, None)
        if self._current_token == token:
            self._current_token = None

    def listener_for(self, token: str) -> ProgressListener:
        """Engine listener that tags every event with `token`."""

        def _listener(event: ProgressEvent) -> None:
            self.accept(token, event)

        return _listener

    def accept(self, token: str, event: ProgressEvent) -> Optional[int]:
        """
        Forward one tagged event.

        Returns:
            The value delivered to the job, or None if the event was dropped
        """
        if token != self._current_token:
            self.discarded_count += 1
            logger.debug(f"[Relay] Discarded stale event for token {token[:8]}")
            return None

        state = self._states.get(token)
        if state is None:
            return None

        value = self._to_percent(event.ratio)
        if value <= state.last_value:
            return None

        now = self._clock()
        if state.last_emit is not None and now - state.last_emit < self.min_interval:
            return None

        state.last_value = value
        state.last_emit = now
        state.sink(value)
        return value

    @staticmethod
    def _to_percent(ratio: float) -> int:
        if ratio is None or math.isnan(ratio):
            return 0
        return max(0, min(RELAY_CEILING, int(ratio * 100)))

    def reset(self) -> None:
        """Drop every token (engine terminated)."""
        self._states.clear()
        self._current_token = None
