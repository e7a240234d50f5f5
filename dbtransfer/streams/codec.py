"""Streaming compression codecs for dump files."""

from __future__ import annotations

import gzip
import io
import lzma
import os
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional, Union

import zstandard

from dbtransfer.exceptions import TransferIOError

PathLike = Union[str, Path]

READ_BUFFER_SIZE = 64 * 1024


class Codec(str, Enum):
    NONE = "none"
    GZIP = "gzip"
    XZ = "xz"
    ZSTD = "zstd"


SUFFIXES = {
    ".gz": Codec.GZIP,
    ".gzip": Codec.GZIP,
    ".xz": Codec.XZ,
    ".zst": Codec.ZSTD,
    ".zstd": Codec.ZSTD,
}

_ALIASES = {
    "": Codec.NONE,
    "none": Codec.NONE,
    "gz": Codec.GZIP,
    "gzip": Codec.GZIP,
    "xz": Codec.XZ,
    "lzma": Codec.XZ,
    "zst": Codec.ZSTD,
    "zstd": Codec.ZSTD,
}

_STREAM_ERRORS = (OSError, EOFError, lzma.LZMAError, zstandard.ZstdError)


def parse_codec(name: Optional[Union[str, Codec]]) -> Optional[Codec]:
    """
    Parse an explicit compression selector.

    Args:
        name: Codec name, alias or None

    Returns:
        Codec, or None when no explicit choice was made

    Raises:
        TransferIOError: If the name is not a supported codec
    """
    if name is None or isinstance(name, Codec):
        return name
    try:
        return _ALIASES[name.strip().lower()]
    except KeyError:
        raise TransferIOError(f"Unsupported compression: {name!r}")


def codec_from_suffix(path: PathLike) -> Codec:
    return SUFFIXES.get(Path(path).suffix.lower(), Codec.NONE)


def resolve_codec(path: PathLike, explicit: Optional[Union[str, Codec]] = None) -> Codec:
    """Explicit option first, else the file suffix, else no compression."""
    codec = parse_codec(explicit)
    if codec is not None:
        return codec
    return codec_from_suffix(path)


class _CountingReader(io.RawIOBase):
    """Raw file wrapper tracking how many compressed bytes were consumed."""

    def __init__(self, raw: BinaryIO):
        self._raw = raw
        self.position = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        n = self._raw.readinto(buffer)
        self.position += n or 0
        return n

    def close(self) -> None:
        self._raw.close()
        super().close()


class CodecReader(io.RawIOBase):
    """Decompressing byte stream over a dump file.

    ``raw_position`` and ``raw_size`` are measured on the file on disk, so
    progress can be reported for compressed input without knowing the
    uncompressed length.
    """

    _counter: Optional[_CountingReader] = None
    _stream = None

    def __init__(self, path: PathLike, codec: Codec, offset: int = 0):
        self.path = Path(path)
        self.codec = codec
        if offset and codec is not Codec.NONE:
            raise TransferIOError(
                f"Cannot resume {self.path} at byte {offset}: "
                f"{codec.value} streams can only be read from the start"
            )
        try:
            self.raw_size = os.path.getsize(self.path)
        except OSError as e:
            raise TransferIOError(f"Cannot open {self.path}: {e}") from e
        if offset > self.raw_size:
            raise TransferIOError(
                f"Cannot resume {self.path} at byte {offset}: file has {self.raw_size} bytes"
            )
        try:
            raw = open(self.path, "rb")
        except OSError as e:
            raise TransferIOError(f"Cannot open {self.path}: {e}") from e
        if offset:
            raw.seek(offset)
        self._counter = _CountingReader(raw)
        self._counter.position = offset

        if codec is Codec.GZIP:
            self._stream = gzip.GzipFile(fileobj=self._counter, mode="rb")
        elif codec is Codec.XZ:
            self._stream = lzma.LZMAFile(self._counter, mode="rb")
        elif codec is Codec.ZSTD:
            self._stream = zstandard.ZstdDecompressor().stream_reader(
                self._counter, read_across_frames=True
            )
        else:
            self._stream = self._counter

    @property
    def raw_position(self) -> int:
        return self._counter.position

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        try:
            return self._stream.read(size)
        except _STREAM_ERRORS as e:
            raise TransferIOError(
                f"Corrupt or unreadable {self.codec.value} stream in {self.path}: {e}"
            ) from e

    def readinto(self, buffer) -> int:
        data = self.read(len(buffer))
        buffer[: len(data)] = data
        return len(data)

    def close(self) -> None:
        if self.closed:
            return
        try:
            if self._stream is not None and self._stream is not self._counter:
                self._stream.close()
        finally:
            try:
                if self._counter is not None:
                    self._counter.close()
            finally:
                super().close()


class CodecWriter(io.RawIOBase):
    """Compressing byte sink; ``bytes_written`` is the on-disk size after close."""

    _raw: Optional[BinaryIO] = None
    _stream = None

    def __init__(self, path: PathLike, codec: Codec):
        self.path = Path(path)
        self.codec = codec
        self.bytes_written = 0
        try:
            self._raw = open(self.path, "wb")
        except OSError as e:
            raise TransferIOError(f"Cannot create {self.path}: {e}") from e

        if codec is Codec.GZIP:
            self._stream = gzip.GzipFile(fileobj=self._raw, mode="wb")
        elif codec is Codec.XZ:
            self._stream = lzma.LZMAFile(self._raw, mode="wb")
        elif codec is Codec.ZSTD:
            self._stream = zstandard.ZstdCompressor(level=3).stream_writer(
                self._raw, closefd=False
            )
        else:
            self._stream = self._raw

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        try:
            self._stream.write(data)
        except _STREAM_ERRORS as e:
            raise TransferIOError(f"Cannot write {self.path}: {e}") from e
        return len(data)

    def close(self) -> None:
        if self.closed:
            return
        try:
            if self._raw is not None:
                try:
                    if self._stream is not self._raw:
                        self._stream.close()
                    self._raw.flush()
                    self.bytes_written = self._raw.tell()
                finally:
                    self._raw.close()
        except _STREAM_ERRORS as e:
            raise TransferIOError(f"Cannot finish {self.path}: {e}") from e
        finally:
            super().close()


def open_reader(
    path: PathLike, codec: Optional[Union[str, Codec]] = None, offset: int = 0
) -> CodecReader:
    """
    Open a dump file for streaming decompression.

    Args:
        path: Dump file path
        codec: Explicit codec; resolved from the suffix when omitted
        offset: Byte position to start reading at; uncompressed files only

    Returns:
        Readable byte stream
    """
    return CodecReader(path, resolve_codec(path, codec), offset)


def open_writer(path: PathLike, codec: Optional[Union[str, Codec]] = None) -> CodecWriter:
    """
    Open a dump file for streaming compression.

    Args:
        path: Dump file path
        codec: Explicit codec; resolved from the suffix when omitted

    Returns:
        Writable byte sink
    """
    return CodecWriter(path, resolve_codec(path, codec))
