"""Audio files that are read from a cache or streamed while they download."""

from __future__ import annotations

import io
import logging
import os
import queue
import struct
import tempfile
import time
from typing import Any, BinaryIO, Callable, Iterable, Optional, Protocol, Tuple, Union

from audiofetch.range_set import Range, RangeSet
from audiofetch.receive import ChannelError, Session, audio_file_fetch, request_range
from audiofetch.shared import (
    DOWNLOAD_TIMEOUT,
    INITIAL_DOWNLOAD_SIZE,
    INITIAL_PING_TIME_ESTIMATE,
    READ_AHEAD_DURING_PLAYBACK,
    READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS,
    AudioFileShared,
    CommandKind,
    DownloadStrategy,
    StreamLoaderCommand,
)

__all__ = [
    "FILE_SIZE_HEADER",
    "FileCache",
    "CachingSession",
    "StreamLoaderController",
    "AudioFileStreaming",
    "AudioFile",
]

log = logging.getLogger(__name__)

#: Channel header id that carries the file size in units of 4 bytes.
FILE_SIZE_HEADER = 0x3


class FileCache(Protocol):
    """What is needed from a cache of complete audio files."""

    def file(self, file_id: bytes) -> Optional[BinaryIO]:
        """Return an open file for ``file_id``, or None if it is not cached."""

    def save_file(self, file_id: bytes, file: BinaryIO) -> None:
        """Store the contents of ``file`` under ``file_id``."""


class CachingSession(Session, Protocol):
    """A session that may offer a file cache."""

    def cache(self) -> Optional[FileCache]:
        """Return the cache, or None if there is none."""


class StreamLoaderController:
    """Controls the downloading of a file and answers what is available."""

    def __init__(
        self,
        command_queue: Optional["queue.Queue[Any]"],
        shared: Optional[AudioFileShared],
        file_size: int,
    ) -> None:
        self._command_queue = command_queue
        self._shared = shared
        self._file_size = file_size

    def __len__(self) -> int:
        return self._file_size

    def is_empty(self) -> bool:
        """Return True if the file has no bytes."""
        return self._file_size == 0

    def range_available(self, range: Range) -> bool:
        """Return True if all bytes of ``range`` can be read without waiting."""
        shared = self._shared
        if shared is None:
            return range.length <= self._file_size - range.start
        with shared.cond:
            return range.length <= shared.downloaded.contained_length_from_value(range.start)

    def range_to_end_available(self) -> bool:
        """Return True if everything from the read position to the end is available."""
        shared = self._shared
        if shared is None:
            return True
        with shared.cond:
            read_position = shared.read_position
        return self.range_available(Range(read_position, self._file_size - read_position))

    def ping_time(self) -> float:
        """Return the estimated ping time in seconds."""
        shared = self._shared
        if shared is None:
            return 0.0
        with shared.cond:
            return shared.ping_time_ms / 1000

    def _send(self, command: StreamLoaderCommand) -> None:
        if self._command_queue is not None:
            self._command_queue.put(command)

    def fetch(self, range: Range) -> None:
        """Ask the loader to download ``range``."""
        self._send(StreamLoaderCommand(CommandKind.FETCH, range))

    def fetch_blocking(self, range: Range) -> None:
        """Ask the loader to download ``range`` and wait until it has arrived."""
        if range.start >= self._file_size:
            range = Range(range.start, 0)
        elif range.end() > self._file_size:
            range = Range(range.start, self._file_size - range.start)

        self.fetch(range)

        shared = self._shared
        if shared is None:
            return
        with shared.cond:
            while range.length > shared.downloaded.contained_length_from_value(range.start):
                shared.cond.wait(DOWNLOAD_TIMEOUT)
                covered = shared.downloaded.union(shared.requested)
                if range.length > covered.contained_length_from_value(range.start):
                    # Neither downloaded nor pending, e.g. after a network error.
                    self.fetch(range)

    def _next_range(self, length: int) -> Optional[Range]:
        shared = self._shared
        if shared is None:
            return None
        with shared.cond:
            return Range(shared.read_position, length)

    def fetch_next(self, length: int) -> None:
        """Ask the loader for ``length`` bytes from the current read position."""
        range = self._next_range(length)
        if range is not None:
            self.fetch(range)

    def fetch_next_blocking(self, length: int) -> None:
        """Like fetch_next, but wait until the bytes have arrived."""
        range = self._next_range(length)
        if range is not None:
            self.fetch_blocking(range)

    def set_random_access_mode(self) -> None:
        """Optimise downloading for random access."""
        self._send(StreamLoaderCommand(CommandKind.RANDOM_ACCESS_MODE))

    def set_stream_mode(self) -> None:
        """Optimise downloading for streaming."""
        self._send(StreamLoaderCommand(CommandKind.STREAM_MODE))

    def close(self) -> None:
        """Stop loading and download nothing more for this file."""
        self._send(StreamLoaderCommand(CommandKind.CLOSE))


class AudioFileStreaming:
    """A readable, seekable file whose bytes are downloaded on demand."""

    def __init__(
        self,
        read_file: BinaryIO,
        command_queue: "queue.Queue[Any]",
        shared: AudioFileShared,
        temp_path: Optional[str] = None,
    ) -> None:
        self._read_file = read_file
        self._position = 0
        self.command_queue = command_queue
        self.shared = shared
        self._temp_path = temp_path

    @classmethod
    def open(
        cls,
        session: Session,
        initial_data: Iterable[bytes],
        initial_data_length: int,
        initial_request_sent_time: float,
        headers: Iterable[Tuple[int, bytes]],
        file_id: bytes,
        on_complete: Callable[[BinaryIO], Any],
        streaming_data_rate: int,
    ) -> AudioFileStreaming:
        """Wait for the file size header, then start the background download."""
        size_data = next((data for header_id, data in headers if header_id == FILE_SIZE_HEADER), None)
        if size_data is None:
            raise ChannelError("channel closed before the file size was received")
        (size_words,) = struct.unpack(">I", bytes(size_data)[:4])
        size = size_words * 4

        shared = AudioFileShared(bytes(file_id), size, streaming_data_rate)

        fd, path = tempfile.mkstemp(prefix="audiofetch-")
        write_file = os.fdopen(fd, "w+b")
        write_file.truncate(size)
        write_file.seek(0)
        read_file = open(path, "rb")
        try:
            os.unlink(path)
            temp_path = None
        except OSError:
            temp_path = path

        command_queue: "queue.Queue[Any]" = queue.Queue()
        session.spawn(
            audio_file_fetch,
            session,
            shared,
            initial_data,
            initial_request_sent_time,
            initial_data_length,
            write_file,
            command_queue,
            on_complete,
        )
        return cls(read_file, command_queue, shared, temp_path)

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes, waiting for them to be downloaded."""
        shared = self.shared
        offset = self._position
        if offset >= shared.file_size:
            return b""

        remaining = shared.file_size - offset
        length = remaining if size is None or size < 0 else min(size, remaining)

        with shared.cond:
            strategy = shared.download_strategy
            ping_time_seconds = shared.ping_time_ms / 1000
        if strategy is DownloadStrategy.STREAMING:
            # Read ahead so playback does not stall.
            length_to_request = length + max(
                int(READ_AHEAD_DURING_PLAYBACK * shared.stream_data_rate),
                int(READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS * ping_time_seconds * shared.stream_data_rate),
            )
            length_to_request = min(length_to_request, remaining)
        else:
            length_to_request = length

        to_request = RangeSet([Range(offset, length_to_request)])
        with shared.cond:
            to_request.subtract_range_set(shared.downloaded)
            to_request.subtract_range_set(shared.requested)
            for item in to_request:
                self.command_queue.put(StreamLoaderCommand(CommandKind.FETCH, item))

            if length == 0:
                return b""

            waited = False
            while offset not in shared.downloaded:
                if shared.download_strategy is DownloadStrategy.STREAMING and not waited:
                    log.debug(
                        "Stream waiting for download of file position %d. "
                        "Downloaded ranges: %s. Pending ranges: %s",
                        offset,
                        shared.downloaded,
                        shared.requested.minus(shared.downloaded),
                    )
                    waited = True
                shared.cond.wait(DOWNLOAD_TIMEOUT)
            available_length = shared.downloaded.contained_length_from_value(offset)
        assert available_length > 0

        self._read_file.seek(offset)
        data = self._read_file.read(min(length, available_length))

        if waited:
            log.debug(
                "Read at position %d completed. %d bytes returned, %d bytes were requested.",
                offset,
                len(data),
                length,
            )

        self._position = offset + len(data)
        with shared.cond:
            shared.read_position = self._position
        return data

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the read position; the new position is returned."""
        self._position = self._read_file.seek(offset, whence)
        with self.shared.cond:
            self.shared.read_position = self._position
        return self._position

    def close(self) -> None:
        """Close the read handle and remove the temporary file if still present."""
        self._read_file.close()
        if self._temp_path is not None:
            try:
                os.unlink(self._temp_path)
            except OSError:
                pass
            self._temp_path = None


class AudioFile:
    """An audio file that is either cached locally or streamed."""

    def __init__(self, source: Union[BinaryIO, AudioFileStreaming]) -> None:
        self._source = source

    @classmethod
    def open(
        cls,
        session: CachingSession,
        file_id: bytes,
        bytes_per_second: int,
        play_from_beginning: bool,
    ) -> AudioFile:
        """Open ``file_id`` from the cache, or start downloading it."""
        cache = session.cache()
        if cache is not None:
            cached = cache.file(file_id)
            if cached is not None:
                log.debug("File %s already in cache", bytes(file_id).hex())
                return cls(cached)

        log.debug("Downloading file %s", bytes(file_id).hex())

        initial_data_length = INITIAL_DOWNLOAD_SIZE
        if play_from_beginning:
            initial_data_length += max(
                int(READ_AHEAD_DURING_PLAYBACK * bytes_per_second),
                int(INITIAL_PING_TIME_ESTIMATE * READ_AHEAD_DURING_PLAYBACK_ROUNDTRIPS * bytes_per_second),
            )
        if initial_data_length % 4 != 0:
            initial_data_length += 4 - initial_data_length % 4

        headers, data = request_range(session, file_id, 0, initial_data_length)

        def store(output: BinaryIO) -> None:
            try:
                complete_cache = session.cache()
                if complete_cache is not None:
                    log.debug("File %s complete, saving to cache", bytes(file_id).hex())
                    complete_cache.save_file(file_id, output)
                else:
                    log.debug("File %s complete", bytes(file_id).hex())
            finally:
                output.close()

        streaming = AudioFileStreaming.open(
            session,
            data,
            initial_data_length,
            time.monotonic(),
            headers,
            file_id,
            store,
            bytes_per_second,
        )
        return cls(streaming)

    def get_stream_loader_controller(self) -> StreamLoaderController:
        """Return a controller for the download of this file."""
        source = self._source
        if isinstance(source, AudioFileStreaming):
            return StreamLoaderController(source.command_queue, source.shared, source.shared.file_size)
        return StreamLoaderController(None, None, os.fstat(source.fileno()).st_size)

    def is_cached(self) -> bool:
        """Return True if the file is read from the cache."""
        return not isinstance(self._source, AudioFileStreaming)

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes."""
        return self._source.read(size)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the read position; the new position is returned."""
        return self._source.seek(offset, whence)

    def close(self) -> None:
        """Close the underlying file."""
        self._source.close()

    def __enter__(self) -> AudioFile:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()