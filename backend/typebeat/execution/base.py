"""
Transcoding engine abstraction layer.

The engine is a single, stateful, non-reentrant resource with a private
filesystem. It can run one transcode at a time no matter how many jobs
the scheduler has admitted; serialization is the engine handle's job,
not the engine's.

Design rules:
- File names are bare names inside the engine's private filesystem
- Progress is pushed to listeners as ProgressEvent values
- terminate() never raises and leaves the engine unloaded
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional


@dataclass(frozen=True)
class ProgressEvent:
    """One progress tick from a running transcode."""

    ratio: float  # 0.0 - 1.0 of the expected duration
    seconds: Optional[float] = None  # Encoded position in seconds


ProgressListener = Callable[[ProgressEvent], None]


class TranscodeEngine(ABC):
    """
    Abstract base class for transcoding engines.

    All engines must implement:
    - load/terminate: lifecycle
    - list_files/write_file/read_file/delete_file: private filesystem
    - exec: run one transcode command
    - progress listener registration
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable engine name for logs."""
        pass

    @property
    @abstractmethod
    def loaded(self) -> bool:
        """True once load() succeeded and until terminate()."""
        pass

    @abstractmethod
    async def load(self, source: str) -> None:
        """
        Load the engine from a source location.

        Raises:
            Exception: Any error means this source is unusable
        """
        pass

    @abstractmethod
    async def list_files(self) -> List[str]:
        """
        List the private filesystem.

        Doubles as the liveness check: raises if the engine is dead.
        """
        pass

    @abstractmethod
    async def write_file(self, name: str, data: bytes) -> None:
        pass

    @abstractmethod
    async def read_file(self, name: str) -> bytes:
        """
        Raises:
            FileNotFoundError: If the file does not exist
        """
        pass

    @abstractmethod
    async def delete_file(self, name: str) -> None:
        """
        Raises:
            FileNotFoundError: If the file does not exist
        """
        pass

    @abstractmethod
    async def exec(self, args: List[str]) -> int:
        """
        Run one transcode command.

        Returns:
            Exit code (0 on success)
        """
        pass

    @abstractmethod
    def add_progress_listener(self, listener: ProgressListener) -> None:
        pass

    @abstractmethod
    def remove_progress_listener(self, listener: ProgressListener) -> None:
        pass

    @abstractmethod
    def clear_progress_listeners(self) -> None:
        pass

    @abstractmethod
    def terminate(self) -> None:
        """Stop any running command and release the engine."""
        pass

    @property
    def last_log(self) -> str:
        """Tail of the last command's diagnostic output."""
        return ""
