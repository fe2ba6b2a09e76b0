"""
Render configuration.

RenderConfig is the single immutable object holding every tunable constant
of the rendering pipeline: concurrency table, retry schedules, timeouts,
FFmpeg source locations and encode parameters.

Values can be overridden from TYPEBEAT_* environment variables via
RenderConfig.from_env(). Library code never reads the environment directly.
"""

import os
from dataclasses import dataclass, replace
from typing import Optional, Tuple


ENV_FFMPEG_PATH = "TYPEBEAT_FFMPEG_PATH"
ENV_CONCURRENCY_TABLE = "TYPEBEAT_CONCURRENCY_TABLE"
ENV_EXEC_TIMEOUT = "TYPEBEAT_EXEC_TIMEOUT"
ENV_HANDOFF_TIMEOUT = "TYPEBEAT_HANDOFF_TIMEOUT"
ENV_RETENTION_SECONDS = "TYPEBEAT_RETENTION_SECONDS"
ENV_MAX_BATCH_SIZE = "TYPEBEAT_MAX_BATCH_SIZE"

# (max batch size, in-flight budget) rows, checked in order
DEFAULT_CONCURRENCY_TABLE: Tuple[Tuple[int, int], ...] = (
    (5, 4),
    (20, 6),
    (50, 8),
    (75, 10),
)
DEFAULT_CONCURRENCY_MAX = 12

DEFAULT_FFMPEG_SOURCES: Tuple[str, ...] = (
    "ffmpeg",
    "/usr/local/bin/ffmpeg",
    "/usr/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
)


@dataclass(frozen=True)
class RenderConfig:
    """
    Complete, immutable pipeline configuration.

    Shared by the scheduler, executor, engine handle and progress relay.
    Use dataclasses.replace() (or with_overrides) to derive variants.
    """

    # Scheduler admission
    concurrency_table: Tuple[Tuple[int, int], ...] = DEFAULT_CONCURRENCY_TABLE
    concurrency_max: int = DEFAULT_CONCURRENCY_MAX
    max_batch_size: int = 100

    # Engine loading: primary source first, then fallbacks
    ffmpeg_sources: Tuple[str, ...] = DEFAULT_FFMPEG_SOURCES
    ffprobe_path: str = "ffprobe"

    # Engine file I/O retry (write/delete/readback)
    io_retry_attempts: int = 3
    io_retry_base_delay: float = 0.2

    # Output read-back retry
    read_retry_attempts: int = 5
    read_retry_base_delay: float = 0.5
    min_output_bytes: int = 1024

    # Timeouts in seconds
    exec_timeout: float = 600.0
    handoff_timeout: Optional[float] = 900.0

    # Progress relay
    progress_min_interval: float = 0.1

    # Registry retention for terminal jobs (None keeps them until discarded)
    retention_seconds: Optional[float] = 600.0

    # Pair preparation cache
    preparation_concurrency: int = 3
    preparation_memory_limit: int = 450 * 1024 * 1024

    # Encode parameters
    canvas_width: int = 1920
    canvas_height: int = 1080
    output_fps: int = 1
    video_preset: str = "ultrafast"
    audio_bitrate: str = "192k"
    logo_width: int = 240
    logo_margin: int = 40

    # Output URLs
    url_prefix: str = "blob:typebeat/"

    def with_overrides(self, **changes) -> "RenderConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "RenderConfig":
        """
        Build a config from TYPEBEAT_* environment variables.

        Unset variables keep their defaults.

        Raises:
            ValueError: If a variable is set to an unparseable value
        """
        env = os.environ if environ is None else environ
        changes = {}

        ffmpeg_path = env.get(ENV_FFMPEG_PATH)
        if ffmpeg_path:
            # Explicit path becomes the primary source, defaults stay as fallbacks
            changes["ffmpeg_sources"] = (ffmpeg_path,) + tuple(
                s for s in DEFAULT_FFMPEG_SOURCES if s != ffmpeg_path
            )

        table = env.get(ENV_CONCURRENCY_TABLE)
        if table:
            rows, maximum = parse_concurrency_table(table)
            changes["concurrency_table"] = rows
            changes["concurrency_max"] = maximum

        if env.get(ENV_EXEC_TIMEOUT):
            changes["exec_timeout"] = _parse_float(env, ENV_EXEC_TIMEOUT)

        if env.get(ENV_HANDOFF_TIMEOUT):
            changes["handoff_timeout"] = _parse_optional_float(env, ENV_HANDOFF_TIMEOUT)

        if env.get(ENV_RETENTION_SECONDS):
            changes["retention_seconds"] = _parse_optional_float(env, ENV_RETENTION_SECONDS)

        if env.get(ENV_MAX_BATCH_SIZE):
            try:
                changes["max_batch_size"] = int(env[ENV_MAX_BATCH_SIZE])
            except ValueError:
                raise ValueError(
                    f"{ENV_MAX_BATCH_SIZE} must be an integer, got {env[ENV_MAX_BATCH_SIZE]!r}"
                )

        return cls(**changes)


def parse_concurrency_table(value: str) -> Tuple[Tuple[Tuple[int, int], ...], int]:
    """
    Parse a concurrency table string.

    Format: comma-separated "threshold:budget" rows followed by a bare
    budget for batches above the last threshold, e.g. "5:4,20:6,50:8,75:10,12".

    Returns:
        Tuple of (rows, budget above last threshold)

    Raises:
        ValueError: If the string is malformed or thresholds are not increasing
    """
    parts = [p.strip() for p in value.split(",") if p.strip()]
    if not parts or ":" in parts[-1]:
        raise ValueError(
            f"{ENV_CONCURRENCY_TABLE} must end with a bare budget, got {value!r}"
        )

    rows = []
    try:
        for part in parts[:-1]:
            threshold, budget = part.split(":", 1)
            rows.append((int(threshold), int(budget)))
        maximum = int(parts[-1])
    except ValueError:
        raise ValueError(f"{ENV_CONCURRENCY_TABLE} is malformed: {value!r}")

    thresholds = [t for t, _ in rows]
    if thresholds != sorted(set(thresholds)):
        raise ValueError(f"{ENV_CONCURRENCY_TABLE} thresholds must be increasing: {value!r}")
    if any(b < 1 for _, b in rows) or maximum < 1:
        raise ValueError(f"{ENV_CONCURRENCY_TABLE} budgets must be positive: {value!r}")

    return tuple(rows), maximum


def _parse_float(env, name: str) -> float:
    try:
        return float(env[name])
    except ValueError:
        raise ValueError(f"{name} must be a number, got {env[name]!r}")


def _parse_optional_float(env, name: str) -> Optional[float]:
    # "none" / "off" disables the timeout or retention
    if env[name].strip().lower() in ("none", "off"):
        return None
    return _parse_float(env, name)


DEFAULT_RENDER_CONFIG = RenderConfig()
