"""State and commands shared between an audio file reader and its downloader."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from typing import Optional

from audiofetch.range_set import Range, RangeSet

__all__ = [
    "MINIMUM_DOWNLOAD_SIZE",
    "INITIAL_DOWNLOAD_SIZE",
    "INITIAL_PING_TIME_ESTIMATE",
    "MAXIMUM_ASSUMED_PING_TIME",
    "READ_AHEAD_BEFORE_PLAYBACK",
    "READ_AHEAD_BEFORE_PLAYBACK_ROUNDTRIPS",
    "READ_AHEAD_DURING_PLAYBACK",
    "READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS",
    "PREFETCH_THRESHOLD_FACTOR",
    "FAST_PREFETCH_THRESHOLD_FACTOR",
    "MAX_PREFETCH_REQUESTS",
    "DOWNLOAD_TIMEOUT",
    "DownloadStrategy",
    "CommandKind",
    "StreamLoaderCommand",
    "AudioFileShared",
]

# Durations below are in seconds.

#: Smallest block requested from the server in one request (typical for seeks).
MINIMUM_DOWNLOAD_SIZE = 1024 * 16

#: Amount of data requested when a file is first opened.
INITIAL_DOWNLOAD_SIZE = 1024 * 16

#: Ping time assumed before one has been measured.
INITIAL_PING_TIME_ESTIMATE = 0.5

#: Measured ping times are capped at this value.
MAXIMUM_ASSUMED_PING_TIME = 1.5

#: Seconds of data that must be present before playback starts.
READ_AHEAD_BEFORE_PLAYBACK = 1.0

#: Like READ_AHEAD_BEFORE_PLAYBACK, as a multiple of the ping time.
READ_AHEAD_BEFORE_PLAYBACK_ROUNDTRIPS = 2.0

#: Seconds of data requested ahead of the read position during playback.
READ_AHEAD_DURING_PLAYBACK = 5.0

#: Like READ_AHEAD_DURING_PLAYBACK, as a multiple of the ping time.
READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS = 10.0

#: Prefetch when pending bytes < factor * ping time * nominal data rate.
PREFETCH_THRESHOLD_FACTOR = 4.0

#: Prefetch when pending bytes < factor * ping time * measured download rate.
FAST_PREFETCH_THRESHOLD_FACTOR = 1.5

#: Prefetch requests are only sent while fewer than this many are pending.
MAX_PREFETCH_REQUESTS = 4

#: How long to wait for download status updates before checking again.
DOWNLOAD_TIMEOUT = 1.0


class DownloadStrategy(enum.Enum):
    """How the downloader should schedule requests."""

    RANDOM_ACCESS = "random_access"
    STREAMING = "streaming"


class CommandKind(enum.Enum):
    """Kinds of commands sent to the stream loader."""

    FETCH = "fetch"
    RANDOM_ACCESS_MODE = "random_access_mode"
    STREAM_MODE = "stream_mode"
    CLOSE = "close"


@dataclass(frozen=True)
class StreamLoaderCommand:
    """A command for the stream loader; only FETCH carries a range."""

    kind: CommandKind
    range: Optional[Range] = None

    def __post_init__(self) -> None:
        if self.kind is CommandKind.FETCH and self.range is None:
            raise ValueError("a fetch command needs a range")
        if self.kind is not CommandKind.FETCH and self.range is not None:
            raise ValueError(f"a {self.kind.value} command takes no range")


@dataclass(eq=False)
class AudioFileShared:
    """Download state shared between the reader and the downloader.

    ``requested``, ``downloaded`` and ``number_of_open_requests`` are guarded
    by ``cond``; waiters are woken through it whenever they change.
    """

    file_id: bytes
    file_size: int
    stream_data_rate: int
    cond: threading.Condition = field(init=False, repr=False)
    requested: RangeSet = field(init=False)
    downloaded: RangeSet = field(init=False)
    download_strategy: DownloadStrategy = field(init=False)
    number_of_open_requests: int = field(init=False)
    ping_time_ms: int = field(init=False)
    read_position: int = field(init=False)

    def __post_init__(self) -> None:
        if self.file_size < 0:
            raise ValueError("file size must not be negative")
        if self.stream_data_rate < 0:
            raise ValueError("stream data rate must not be negative")
        self.cond = threading.Condition()
        self.requested = RangeSet()
        self.downloaded = RangeSet()
        # Random access until someone says otherwise.
        self.download_strategy = DownloadStrategy.RANDOM_ACCESS
        self.number_of_open_requests = 0
        self.ping_time_ms = 0
        self.read_position = 0