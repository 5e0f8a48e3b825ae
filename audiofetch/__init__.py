"""Byte-range bookkeeping, streaming audio file download and AES-128-CTR decryption."""

__version__ = "0.1.0"

__all__ = ["audio_file", "decrypt", "range_set", "receive", "shared"]