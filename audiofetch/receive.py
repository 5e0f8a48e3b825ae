"""Range requests and the background loop that downloads an audio file."""

from __future__ import annotations

import logging
import queue
import struct
import time
from dataclasses import dataclass
from typing import (
    Any,
    BinaryIO,
    Callable,
    Iterable,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from audiofetch.range_set import Range, RangeSet
from audiofetch.shared import (
    FAST_PREFETCH_THRESHOLD_FACTOR,
    MAX_PREFETCH_REQUESTS,
    MAXIMUM_ASSUMED_PING_TIME,
    MINIMUM_DOWNLOAD_SIZE,
    PREFETCH_THRESHOLD_FACTOR,
    AudioFileShared,
    CommandKind,
    DownloadStrategy,
    StreamLoaderCommand,
)

__all__ = [
    "STREAM_CHUNK_PACKET",
    "ChannelError",
    "Session",
    "ResponseTime",
    "PartialFileData",
    "build_range_request",
    "request_range",
    "receive_data",
    "AudioFileFetch",
    "audio_file_fetch",
]

log = logging.getLogger(__name__)

#: Packet type of a stream chunk request.
STREAM_CHUNK_PACKET = 0x8


class ChannelError(Exception):
    """Raised by a channel's data iterator when the channel fails."""


class Session(Protocol):
    """What the downloader needs from a connected session."""

    def allocate_channel(self) -> Tuple[int, Iterable[Any], Iterable[bytes]]:
        """Return a new channel id with its header and data iterables."""

    def send_packet(self, cmd: int, data: bytes) -> None:
        """Send a packet to the server."""

    def spawn(self, func: Callable[..., Any], *args: Any) -> None:
        """Run ``func(*args)`` in the background."""

    def download_rate_estimate(self) -> int:
        """Return the current download rate in bytes per second."""


@dataclass(frozen=True)
class ResponseTime:
    """A measured round-trip time, in seconds."""

    duration: float


@dataclass(frozen=True)
class PartialFileData:
    """A chunk of file data received at ``offset``."""

    offset: int
    data: bytes


ReceivedData = Union[ResponseTime, PartialFileData]


def _check_alignment(offset: int, length: int) -> None:
    if offset % 4 != 0:
        raise ValueError("Range request start positions must be aligned by 4 bytes.")
    if length % 4 != 0:
        raise ValueError("Range request range lengths must be aligned by 4 bytes.")


def build_range_request(channel_id: int, file_id: bytes, offset: int, length: int) -> bytes:
    """Return the packet body that requests ``length`` bytes of a file from ``offset``."""
    _check_alignment(offset, length)
    start = offset // 4
    end = (offset + length) // 4
    header = struct.pack(">HBBHIII", channel_id, 0, 1, 0x0000, 0x00000000, 0x00009C40, 0x00020000)
    return header + bytes(file_id) + struct.pack(">II", start, end)


def request_range(session: Session, file_id: bytes, offset: int, length: int):
    """Send a range request on a new channel and return its (headers, data)."""
    _check_alignment(offset, length)
    channel_id, headers, data = session.allocate_channel()
    session.send_packet(STREAM_CHUNK_PACKET, build_range_request(channel_id, file_id, offset, length))
    return headers, data


def receive_data(
    shared: AudioFileShared,
    file_data_queue: "queue.Queue[Any]",
    data_chunks: Iterable[bytes],
    initial_data_offset: int,
    initial_request_length: int,
    request_sent_time: float,
) -> None:
    """Forward the chunks of one request to ``file_data_queue``.

    ``request_sent_time`` is a ``time.monotonic()`` value. Whatever part of the
    request never arrives is removed from the requested ranges again.
    """
    data_offset = initial_data_offset
    request_length = initial_request_length

    with shared.cond:
        old_number_of_requests = shared.number_of_open_requests
        shared.number_of_open_requests += 1
    measure_ping_time = old_number_of_requests == 0

    failed = False
    try:
        for chunk in data_chunks:
            if measure_ping_time:
                duration = min(time.monotonic() - request_sent_time, MAXIMUM_ASSUMED_PING_TIME)
                file_data_queue.put(ResponseTime(duration))
                measure_ping_time = False
            data = bytes(chunk)
            file_data_queue.put(PartialFileData(data_offset, data))
            data_offset += len(data)
            if request_length < len(data):
                log.warning(
                    "Data receiver for range %d (+%d) received more data from server than requested.",
                    initial_data_offset,
                    initial_request_length,
                )
                request_length = 0
            else:
                request_length -= len(data)
            if request_length == 0:
                break
    except ChannelError:
        failed = True

    with shared.cond:
        if request_length > 0:
            shared.requested.subtract_range(Range(data_offset, request_length))
        shared.number_of_open_requests -= 1
        shared.cond.notify_all()

    if failed:
        log.warning(
            "Error from channel for data receiver for range %d (+%d).",
            initial_data_offset,
            initial_request_length,
        )
    elif request_length > 0:
        log.warning(
            "Data receiver for range %d (+%d) received less data from server than requested.",
            initial_data_offset,
            initial_request_length,
        )


class AudioFileFetch:
    """Issues range requests and writes received data to the output file."""

    def __init__(
        self,
        session: Session,
        shared: AudioFileShared,
        output: BinaryIO,
        file_data_queue: "queue.Queue[Any]",
        on_complete: Callable[[BinaryIO], Any],
    ) -> None:
        self.session = session
        self.shared = shared
        self._output: Optional[BinaryIO] = output
        self.file_data_queue = file_data_queue
        self._on_complete: Optional[Callable[[BinaryIO], Any]] = on_complete
        self.network_response_times: list[float] = []

    @property
    def download_strategy(self) -> DownloadStrategy:
        with self.shared.cond:
            return self.shared.download_strategy

    def download_range(self, offset: int, length: int) -> None:
        """Request a range, widened and aligned, minus what is already covered."""
        file_size = self.shared.file_size
        length = max(length, MINIMUM_DOWNLOAD_SIZE)
        if offset >= file_size or length == 0:
            return
        if offset + length > file_size:
            length = file_size - offset
        if offset % 4 != 0:
            length += offset % 4
            offset -= offset % 4
        if length % 4 != 0:
            length += 4 - length % 4

        to_request = RangeSet([Range(offset, length)])
        with self.shared.cond:
            to_request.subtract_range_set(self.shared.downloaded)
            to_request.subtract_range_set(self.shared.requested)
            for item in to_request:
                _headers, data = request_range(self.session, self.shared.file_id, item.start, item.length)
                self.shared.requested.add_range(item)
                self.session.spawn(
                    receive_data,
                    self.shared,
                    self.file_data_queue,
                    data,
                    item.start,
                    item.length,
                    time.monotonic(),
                )

    def pre_fetch_more_data(self, byte_count: int, max_requests_to_send: int) -> None:
        """Request up to ``byte_count`` missing bytes, the tail after the read position first."""
        bytes_to_go = byte_count
        requests_to_go = max_requests_to_send
        file_size = self.shared.file_size

        while bytes_to_go > 0 and requests_to_go > 0:
            missing = RangeSet([Range(0, file_size)])
            with self.shared.cond:
                missing.subtract_range_set(self.shared.downloaded)
                missing.subtract_range_set(self.shared.requested)
                read_position = self.shared.read_position

            tail_end = RangeSet([Range(read_position, file_size - read_position)]).intersection(missing)

            if not tail_end.is_empty():
                target = tail_end[0]
            elif not missing.is_empty():
                target = missing[0]
            else:
                return
            length = min(target.length, bytes_to_go)
            self.download_range(target.start, length)
            requests_to_go -= 1
            bytes_to_go -= length

    def handle_file_data(self, data: ReceivedData) -> bool:
        """Process received data; return True once the file is complete."""
        if isinstance(data, ResponseTime):
            times = self.network_response_times
            while len(times) >= 3:
                times.pop(0)
            times.append(data.duration)
            if len(times) == 1:
                ping_time = times[0]
            elif len(times) == 2:
                ping_time = (times[0] + times[1]) / 2
            else:
                ping_time = sorted(times)[1]
            with self.shared.cond:
                self.shared.ping_time_ms = int(ping_time * 1000)
            return False

        if self._output is None:
            raise RuntimeError("the download has already finished")
        self._output.seek(data.offset)
        self._output.write(data.data)

        with self.shared.cond:
            self.shared.downloaded.add_range(Range(data.offset, len(data.data)))
            self.shared.cond.notify_all()
            full = self.shared.downloaded.contained_length_from_value(0) >= self.shared.file_size

        if full:
            self.finish()
            return True
        return False

    def handle_stream_loader_command(self, cmd: StreamLoaderCommand) -> bool:
        """Carry out a command; return True if loading should stop."""
        if cmd.kind is CommandKind.FETCH:
            self.download_range(cmd.range.start, cmd.range.length)
        elif cmd.kind is CommandKind.RANDOM_ACCESS_MODE:
            with self.shared.cond:
                self.shared.download_strategy = DownloadStrategy.RANDOM_ACCESS
        elif cmd.kind is CommandKind.STREAM_MODE:
            with self.shared.cond:
                self.shared.download_strategy = DownloadStrategy.STREAMING
        elif cmd.kind is CommandKind.CLOSE:
            return True
        return False

    def finish(self) -> None:
        """Rewind the output and hand it to the completion callback."""
        if self._output is None or self._on_complete is None:
            raise RuntimeError("the download has already finished")
        output, on_complete = self._output, self._on_complete
        self._output = None
        self._on_complete = None
        output.seek(0)
        on_complete(output)


def audio_file_fetch(
    session: Session,
    shared: AudioFileShared,
    initial_data: Iterable[bytes],
    initial_request_sent_time: float,
    initial_data_length: int,
    output: BinaryIO,
    command_queue: "queue.Queue[Any]",
    on_complete: Callable[[BinaryIO], Any],
) -> None:
    """Run the download loop until the file is complete or loading is stopped.

    ``command_queue`` carries both stream loader commands and received data;
    putting ``None`` on it ends the loop.
    """
    with shared.cond:
        shared.requested.add_range(Range(0, initial_data_length))

    session.spawn(
        receive_data,
        shared,
        command_queue,
        initial_data,
        0,
        initial_data_length,
        initial_request_sent_time,
    )

    fetch = AudioFileFetch(session, shared, output, command_queue, on_complete)

    while True:
        item = command_queue.get()
        if item is None:
            break
        if isinstance(item, StreamLoaderCommand):
            stop = fetch.handle_stream_loader_command(item)
        else:
            stop = fetch.handle_file_data(item)
        if stop:
            break

        if fetch.download_strategy is not DownloadStrategy.STREAMING:
            continue
        with shared.cond:
            open_requests = shared.number_of_open_requests
            bytes_pending = len(shared.requested.minus(shared.downloaded))
            ping_time_seconds = shared.ping_time_ms / 1000
        if open_requests >= MAX_PREFETCH_REQUESTS:
            continue
        max_requests_to_send = MAX_PREFETCH_REQUESTS - open_requests
        download_rate = session.download_rate_estimate()
        desired_pending_bytes = max(
            int(PREFETCH_THRESHOLD_FACTOR * ping_time_seconds * shared.stream_data_rate),
            int(FAST_PREFETCH_THRESHOLD_FACTOR * ping_time_seconds * download_rate),
        )
        if bytes_pending < desired_pending_bytes:
            fetch.pre_fetch_more_data(desired_pending_bytes - bytes_pending, max_requests_to_send)