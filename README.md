# audiofetch

Streaming download of audio files in byte ranges, with read-ahead and
prefetching tuned by the measured round-trip time, and AES-128-CTR decryption
of the audio as it is read.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `audiofetch.range_set`: `Range` (a frozen half-open range with `start`,
  `length` and `end()`) and `RangeSet`, a sorted set of non-overlapping,
  non-touching ranges. Adding a range merges it with those it overlaps or
  touches. It supports `add_range`, `add_range_set`, `subtract_range`,
  `subtract_range_set`, `union`, `minus`, `intersection`,
  `contains_range_set`, `contained_length_from_value`, `copy`, `in` for a
  single position, indexing, iteration, and `len()`, which is the total number
  of bytes covered.
- `audiofetch.decrypt`: `AudioDecrypt(key, reader)`, a readable and seekable
  wrapper that decrypts an AES-128-CTR stream with a fixed IV (`AUDIO_AESIV`).
  The key must be 16 bytes, otherwise `ValueError` is raised. `seek` moves the
  keystream to the new position. Used as a context manager it closes the
  wrapped reader on exit.
- `audiofetch.shared`: the tuning constants (sizes in bytes, durations in
  seconds), the `DownloadStrategy` and `CommandKind` enums, the
  `StreamLoaderCommand` message (only a `FETCH` command carries a range), and
  `AudioFileShared`, the download state shared by reader and downloader and
  guarded by its `cond` condition variable.
- `audiofetch.receive`: `build_range_request` (the packet body for a range
  request; offset and length must be multiples of 4, otherwise `ValueError`),
  `request_range`, `receive_data`, `AudioFileFetch` and the download loop
  `audio_file_fetch`. The loop reads stream loader commands and received data
  from one queue and stops when the file is complete, on a `CLOSE` command, or
  when `None` is put on the queue. In streaming mode it prefetches more data
  from the read position onward. Ping time is the median of the last three
  measured response times, capped at 1.5 seconds.
- `audiofetch.audio_file`: `AudioFile`, `AudioFileStreaming` and
  `StreamLoaderController`. `AudioFile.open` returns the cached file if the
  session's cache has one. Otherwise it requests the first block, waits for the
  file size header (`FILE_SIZE_HEADER`), and returns a reader whose `read`
  blocks until the bytes at the read position have arrived. A finished
  download is handed to the cache's `save_file`.

## Example: tracking downloaded ranges

```python
from audiofetch.range_set import Range, RangeSet

downloaded = RangeSet()
downloaded.add_range(Range(0, 100))
downloaded.add_range(Range(200, 50))

print(50 in downloaded)                           # True
print(downloaded.contained_length_from_value(10)) # 90

wanted = RangeSet([Range(0, 300)])
missing = wanted.minus(downloaded)
print(missing)                                    # ([100, 199][250, 299])
```

## Example: decrypting a stream

```python
import io
from audiofetch.decrypt import AudioDecrypt

key = bytes(16)  # placeholder 16-byte audio key
with AudioDecrypt(key, open("track.enc", "rb")) as audio:
    audio.seek(4096, io.SEEK_SET)
    chunk = audio.read(1024)
```

## Example: steering a streaming download

```python
from audiofetch.audio_file import AudioFile
from audiofetch.range_set import Range

with AudioFile.open(session, file_id, bytes_per_second=40_000,
                    play_from_beginning=True) as audio_file:
    controller = audio_file.get_stream_loader_controller()
    controller.set_stream_mode()
    controller.fetch_blocking(Range(0, 64 * 1024))
    print(controller.range_to_end_available())
    print(controller.ping_time())  # seconds
    data = audio_file.read(4096)
```

## The session you supply

The package does its work through a session object that you provide. It is
described by the `Session` protocol in `audiofetch.receive` and the
`CachingSession` and `FileCache` protocols in `audiofetch.audio_file`:

- `allocate_channel()` returns `(channel_id, headers, data)`. `headers`
  yields `(header_id, bytes)` pairs, and `data` yields byte chunks. It may
  raise `audiofetch.receive.ChannelError` if the channel fails.
- `send_packet(cmd, data)` sends a packet. Range requests use
  `STREAM_CHUNK_PACKET` (`0x8`).
- `spawn(func, *args)` runs `func(*args)` in the background, for example on a
  thread.
- `download_rate_estimate()` returns the current download rate in bytes per
  second.
- `cache()` returns an object with `file(file_id)` and
  `save_file(file_id, file)`, or `None`.

## What it does not do

The package has no network connection, login, or server protocol of its own.
It has no file cache implementation and no command-line program. It handles
requesting, receiving, storing and reading file data over a session that
provides those things. It does not decode audio or play it.