"""Dump file streams: compression codecs and SQL statement framing."""

from dbtransfer.streams.codec import Codec, open_reader, open_writer, resolve_codec
from dbtransfer.streams.statements import StatementReader, StatementWriter

__all__ = [
    "Codec",
    "StatementReader",
    "StatementWriter",
    "open_reader",
    "open_writer",
    "resolve_codec",
]
