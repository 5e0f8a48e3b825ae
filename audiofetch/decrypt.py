"""Decryption of encrypted audio streams."""

from __future__ import annotations

import io
from typing import BinaryIO

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

__all__ = ["AUDIO_AESIV", "AudioDecrypt"]

AUDIO_AESIV = bytes(
    [
        0x72, 0xE0, 0x67, 0xFB, 0xDD, 0xCB, 0xCF, 0x77,
        0xEB, 0xE8, 0xBC, 0x64, 0x3F, 0x63, 0x0D, 0x93,
    ]
)

_BLOCK_SIZE = 16
_COUNTER_MODULUS = 1 << 128


class AudioDecrypt:
    """A readable, seekable stream that decrypts AES-128-CTR audio data."""

    def __init__(self, key: bytes, reader: BinaryIO) -> None:
        key = bytes(key)
        if len(key) != 16:
            raise ValueError("audio key must be 16 bytes long")
        self._key = key
        self._reader = reader
        self._decryptor = self._decryptor_at(0)

    def _decryptor_at(self, position: int):
        block, skip = divmod(position, _BLOCK_SIZE)
        counter = (int.from_bytes(AUDIO_AESIV, "big") + block) % _COUNTER_MODULUS
        nonce = counter.to_bytes(_BLOCK_SIZE, "big")
        decryptor = Cipher(algorithms.AES(self._key), modes.CTR(nonce)).decryptor()
        if skip:
            decryptor.update(bytes(skip))
        return decryptor

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes from the underlying reader and decrypt them."""
        data = self._reader.read(size)
        if not data:
            return b""
        return self._decryptor.update(data)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Seek the underlying reader and move the keystream to match."""
        position = self._reader.seek(offset, whence)
        self._decryptor = self._decryptor_at(position)
        return position

    def __enter__(self) -> AudioDecrypt:
        return self

    def __exit__(self, *exc_info) -> None:
        close = getattr(self._reader, "close", None)
        if close is not None:
            close()