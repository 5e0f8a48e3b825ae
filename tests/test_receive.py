import io
import queue
import struct
import time

import pytest

from audiofetch.range_set import Range, RangeSet
from audiofetch.receive import (
    STREAM_CHUNK_PACKET,
    AudioFileFetch,
    ChannelError,
    PartialFileData,
    ResponseTime,
    audio_file_fetch,
    build_range_request,
    receive_data,
    request_range,
)
from audiofetch.shared import (
    MAXIMUM_ASSUMED_PING_TIME,
    MINIMUM_DOWNLOAD_SIZE,
    AudioFileShared,
    CommandKind,
    DownloadStrategy,
    StreamLoaderCommand,
)

FILE_ID = bytes(range(20))


class FakeSession:
    def __init__(self, run_spawned=False):
        self.packets = []
        self.spawned = []
        self.run_spawned = run_spawned
        self._next_id = 0

    def allocate_channel(self):
        channel_id = self._next_id
        self._next_id += 1
        return channel_id, [], []

    def send_packet(self, cmd, data):
        self.packets.append((cmd, data))

    def spawn(self, func, *args):
        self.spawned.append(args)
        if self.run_spawned:
            func(*args)

    def download_rate_estimate(self):
        return 0


def drain(q):
    items = []
    while not q.empty():
        items.append(q.get_nowait())
    return items


def _failing_chunks():
    yield b"abcd"
    raise ChannelError("broken")


def make_fetch(file_size=200000, session=None):
    session = session or FakeSession()
    shared = AudioFileShared(FILE_ID, file_size, 1000)
    completed = []
    fetch = AudioFileFetch(session, shared, io.BytesIO(bytes(file_size)), queue.Queue(), completed.append)
    return fetch, session, shared, completed


def test_build_range_request_wire_format():
    packet = build_range_request(2, FILE_ID, 0, 8)
    assert packet[:18] == bytes.fromhex("00020001000000000000" "00009c40" "00020000")
    assert packet[18:38] == FILE_ID
    assert struct.unpack(">II", packet[38:]) == (0, 2)


@pytest.mark.parametrize("offset,length", [(1, 8), (0, 7)])
def test_build_range_request_rejects_misaligned(offset, length):
    with pytest.raises(ValueError):
        build_range_request(0, FILE_ID, offset, length)


def test_request_range_sends_chunk_packet():
    session = FakeSession()
    headers, data = request_range(session, FILE_ID, 16, 32)
    assert headers == [] and data == []
    assert len(session.packets) == 1
    cmd, packet = session.packets[0]
    assert cmd == STREAM_CHUNK_PACKET
    assert packet == build_range_request(0, FILE_ID, 16, 32)


def test_request_range_misaligned_sends_nothing():
    session = FakeSession()
    with pytest.raises(ValueError):
        request_range(session, FILE_ID, 2, 8)
    assert session.packets == []


def test_receive_data_forwards_chunks_in_order():
    shared = AudioFileShared(FILE_ID, 100, 10)
    shared.requested.add_range(Range(8, 8))
    q = queue.Queue()
    receive_data(shared, q, [b"abcd", b"efgh"], 8, 8, time.monotonic())
    items = drain(q)
    assert isinstance(items[0], ResponseTime)
    assert items[1:] == [PartialFileData(8, b"abcd"), PartialFileData(12, b"efgh")]
    assert shared.number_of_open_requests == 0
    assert shared.requested == RangeSet([Range(8, 8)])


def test_receive_data_caps_response_time():
    shared = AudioFileShared(FILE_ID, 100, 10)
    q = queue.Queue()
    receive_data(shared, q, [b"abcd"], 0, 4, time.monotonic() - 10)
    assert drain(q)[0] == ResponseTime(MAXIMUM_ASSUMED_PING_TIME)


def test_receive_data_measures_only_without_other_requests():
    shared = AudioFileShared(FILE_ID, 100, 10)
    shared.number_of_open_requests = 1
    q = queue.Queue()
    receive_data(shared, q, [b"abcd"], 0, 4, time.monotonic())
    assert drain(q) == [PartialFileData(0, b"abcd")]
    assert shared.number_of_open_requests == 1


def test_receive_data_short_response_releases_missing_range():
    shared = AudioFileShared(FILE_ID, 100, 10)
    shared.requested.add_range(Range(0, 12))
    q = queue.Queue()
    receive_data(shared, q, [b"abcd"], 0, 12, time.monotonic())
    assert shared.requested == RangeSet([Range(0, 4)])


def test_receive_data_channel_error_releases_missing_range():
    shared = AudioFileShared(FILE_ID, 100, 10)
    shared.requested.add_range(Range(0, 12))
    q = queue.Queue()
    receive_data(shared, q, _failing_chunks(), 0, 12, time.monotonic())
    assert shared.requested == RangeSet([Range(0, 4)])
    assert shared.number_of_open_requests == 0


def test_receive_data_stops_after_requested_length():
    shared = AudioFileShared(FILE_ID, 100, 10)
    q = queue.Queue()
    receive_data(shared, q, [b"abcdef", b"ignored"], 0, 4, time.monotonic())
    data = [item for item in drain(q) if isinstance(item, PartialFileData)]
    assert data == [PartialFileData(0, b"abcdef")]


def test_download_range_widens_and_aligns():
    fetch, session, shared, _ = make_fetch()
    fetch.download_range(5, 10)
    assert len(session.packets) == 1
    assert len(shared.requested) >= MINIMUM_DOWNLOAD_SIZE
    first = shared.requested[0]
    assert first.start % 4 == 0 and first.length % 4 == 0
    assert 5 in shared.requested
    assert len(session.spawned) == 1


def test_download_range_past_end_does_nothing():
    fetch, session, shared, _ = make_fetch(file_size=100)
    fetch.download_range(100, 10)
    assert session.packets == []
    assert shared.requested.is_empty()


def test_download_range_clamped_to_file():
    fetch, session, shared, _ = make_fetch(file_size=100)
    fetch.download_range(0, 10)
    assert shared.requested == RangeSet([Range(0, 100)])


def test_download_range_skips_covered_bytes():
    fetch, session, shared, _ = make_fetch(file_size=100)
    shared.downloaded.add_range(Range(0, 100))
    fetch.download_range(0, 10)
    assert session.packets == []
    assert shared.requested.is_empty()


def test_pre_fetch_prefers_tail_after_read_position():
    fetch, session, shared, _ = make_fetch(file_size=200000)
    shared.read_position = 65536
    fetch.pre_fetch_more_data(1000, 1)
    assert shared.requested[0].start == 65536
    assert 0 not in shared.requested
    assert len(session.packets) == 1


def test_pre_fetch_falls_back_to_start():
    fetch, session, shared, _ = make_fetch(file_size=200000)
    shared.read_position = 100000
    shared.downloaded.add_range(Range(100000, 100000))
    fetch.pre_fetch_more_data(1000, 1)
    assert 0 in shared.requested
    assert 100000 not in shared.requested


def test_pre_fetch_nothing_missing():
    fetch, session, shared, _ = make_fetch(file_size=100)
    shared.downloaded.add_range(Range(0, 100))
    fetch.pre_fetch_more_data(1000, 4)
    assert session.packets == []


def test_ping_time_is_median_of_last_three():
    fetch, _, shared, _ = make_fetch()
    assert fetch.handle_file_data(ResponseTime(0.1)) is False
    assert shared.ping_time_ms == 100
    for duration in (0.5, 0.3):
        fetch.handle_file_data(ResponseTime(duration))
    assert shared.ping_time_ms == 300
    assert len(fetch.network_response_times) == 3
    fetch.handle_file_data(ResponseTime(0.5))
    assert len(fetch.network_response_times) == 3


def test_file_data_is_written_and_completes():
    fetch, _, shared, completed = make_fetch(file_size=8)
    assert fetch.handle_file_data(PartialFileData(4, b"efgh")) is False
    assert shared.downloaded == RangeSet([Range(4, 4)])
    assert fetch.handle_file_data(PartialFileData(0, b"abcd")) is True
    assert len(completed) == 1
    assert completed[0].read() == b"abcdefgh"


def test_finish_twice_raises():
    fetch, _, _, _ = make_fetch(file_size=8)
    fetch.finish()
    with pytest.raises(RuntimeError):
        fetch.finish()


def test_stream_loader_commands():
    fetch, session, shared, _ = make_fetch(file_size=100)
    assert fetch.handle_stream_loader_command(StreamLoaderCommand(CommandKind.STREAM_MODE)) is False
    assert shared.download_strategy is DownloadStrategy.STREAMING
    fetch.handle_stream_loader_command(StreamLoaderCommand(CommandKind.RANDOM_ACCESS_MODE))
    assert shared.download_strategy is DownloadStrategy.RANDOM_ACCESS
    fetch.handle_stream_loader_command(StreamLoaderCommand(CommandKind.FETCH, Range(0, 4)))
    assert shared.requested == RangeSet([Range(0, 100)])
    assert fetch.handle_stream_loader_command(StreamLoaderCommand(CommandKind.CLOSE)) is True


def test_audio_file_fetch_downloads_whole_file():
    session = FakeSession(run_spawned=True)
    shared = AudioFileShared(FILE_ID, 8, 10)
    completed = []
    output = io.BytesIO(bytes(8))
    audio_file_fetch(
        session, shared, [b"abcd", b"efgh"], time.monotonic(), 8, output, queue.Queue(), completed.append
    )
    assert len(completed) == 1
    assert completed[0].read() == b"abcdefgh"
    assert shared.downloaded == RangeSet([Range(0, 8)])
    assert shared.number_of_open_requests == 0


def test_audio_file_fetch_stops_on_close():
    session = FakeSession()
    shared = AudioFileShared(FILE_ID, 100, 10)
    completed = []
    commands = queue.Queue()
    commands.put(StreamLoaderCommand(CommandKind.CLOSE))
    audio_file_fetch(session, shared, [], time.monotonic(), 16, io.BytesIO(), commands, completed.append)
    assert completed == []
    assert shared.requested == RangeSet([Range(0, 16)])


def test_audio_file_fetch_stops_on_none():
    session = FakeSession()
    shared = AudioFileShared(FILE_ID, 100, 10)
    commands = queue.Queue()
    commands.put(StreamLoaderCommand(CommandKind.STREAM_MODE))
    commands.put(None)
    audio_file_fetch(session, shared, [], time.monotonic(), 16, io.BytesIO(), commands, lambda f: None)
    assert shared.download_strategy is DownloadStrategy.STREAMING
    assert commands.empty()