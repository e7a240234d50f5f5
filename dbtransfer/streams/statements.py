"""Lazy SQL statement tokenizer and writer for dump streams."""

from __future__ import annotations

import codecs
import re
from typing import BinaryIO, Iterator, List, Optional

from dbtransfer.exceptions import ParseError

READ_CHUNK_SIZE = 64 * 1024
MAX_STATEMENT_SIZE = 64 * 1024 * 1024

_NORMAL = 0
_QUOTE = 1
_LINE_COMMENT = 2
_BLOCK_COMMENT = 3
_DOLLAR = 4

_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")
_PARTIAL_DOLLAR_TAG = re.compile(r"\$[A-Za-z0-9_]*\Z")
_DELIMITER_COMMAND = re.compile(r"DELIMITER[ \t]+(\S+)", re.IGNORECASE)
_LEADING_SPACE = re.compile(r"\s*")


def _is_word_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


class StatementReader:
    """Split a byte stream into executable SQL statements.

    A statement ends at the current delimiter when it appears outside quoted
    spans and comments. Comments are removed (a block comment becomes a
    space, a line comment a newline) except MariaDB ``/*! ... */`` executable
    comments, which are kept verbatim. Statement text is otherwise returned
    unchanged, so a multi-row INSERT stays one statement.

    The reader is a one-shot iterator: it pulls ``chunk_size`` bytes at a time
    from ``stream`` only when the caller asks for the next statement.

    Raises:
        ParseError: On an unterminated quote, block comment or dollar-quoted
            body at end of stream, on text that is not valid in ``encoding``
            and on statements larger than ``max_statement_size``.
    """

    def __init__(
        self,
        stream: BinaryIO,
        encoding: str = "utf-8",
        chunk_size: int = READ_CHUNK_SIZE,
        max_statement_size: int = MAX_STATEMENT_SIZE,
        delimiter: str = ";",
        backslash_escapes: bool = True,
        hash_comments: bool = True,
        dollar_quotes: bool = False,
        delimiter_command: Optional[bool] = None,
    ):
        self._stream = stream
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="strict")
        self._chunk_size = chunk_size
        self.max_statement_size = max_statement_size
        self.backslash_escapes = backslash_escapes
        self.hash_comments = hash_comments
        self.dollar_quotes = dollar_quotes
        self.delimiter_command = (
            hash_comments if delimiter_command is None else delimiter_command
        )
        self.statements_read = 0

        self._text = ""
        self._pos = 0
        self._base = 0
        self._first_chunk = True
        self._eof = False
        self._done = False

        self._parts: List[str] = []
        self._size = 0
        self._has_content = False
        self._stmt_start = 0

        self._state = _NORMAL
        self._quote = ""
        self._quote_pattern: Optional[re.Pattern] = None
        self._tag = ""
        self._keep_comment = False

        self._set_delimiter(delimiter)

    @property
    def delimiter(self) -> str:
        return self._delimiter

    def _set_delimiter(self, delimiter: str) -> None:
        self._delimiter = delimiter
        specials = "'\"`-/" + delimiter[0]
        if self.hash_comments:
            specials += "#"
        if self.dollar_quotes:
            specials += "$"
        self._special = re.compile("[" + re.escape(specials) + "]")

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        statement = self.next_statement()
        if statement is None:
            raise StopIteration
        return statement

    def next_statement(self) -> Optional[str]:
        """
        Read the next statement.

        Returns:
            Statement text without its delimiter, or None at end of stream
        """
        while not self._done:
            statement = self._scan()
            if statement is not None:
                self.statements_read += 1
                return statement
            if self._eof:
                statement = self._finish()
                if statement is not None:
                    self.statements_read += 1
                    return statement
            else:
                self._fill()
        return None

    def _fill(self) -> None:
        chunk = self._stream.read(self._chunk_size)
        try:
            if chunk:
                text = self._decoder.decode(chunk)
            else:
                text = self._decoder.decode(b"", final=True)
                self._eof = True
        except UnicodeDecodeError as e:
            raise ParseError(
                f"Invalid text encoding in dump: {e}", offset=self._base + self._pos
            ) from e

        if self._first_chunk and text:
            self._first_chunk = False
            if text.startswith("\ufeff"):
                text = text[1:]

        self._base += self._pos
        self._text = self._text[self._pos:] + text
        self._pos = 0

    def _append(self, piece: str) -> None:
        if not piece:
            return
        self._parts.append(piece)
        self._size += len(piece)
        if not self._has_content and not piece.isspace():
            self._has_content = True
        if self._size > self.max_statement_size:
            raise ParseError(
                f"Statement exceeds maximum size of {self.max_statement_size} bytes",
                offset=self._stmt_start,
            )

    def _emit(self) -> Optional[str]:
        statement = "".join(self._parts).strip()
        self._parts = []
        self._size = 0
        self._has_content = False
        self._stmt_start = self._base + self._pos
        return statement or None

    def _prev_char(self, index: int) -> str:
        if index > 0:
            return self._text[index - 1]
        if self._parts:
            return self._parts[-1][-1:]
        return ""

    def _available(self, index: int, count: int) -> bool:
        """True when ``count`` chars from ``index`` are buffered or no more will come."""
        return self._eof or index + count <= len(self._text)

    def _scan(self) -> Optional[str]:
        text = self._text
        while True:
            pos = self._pos
            state = self._state

            if state == _NORMAL:
                if self.delimiter_command and not self._has_content:
                    handled = self._delimiter_directive()
                    if handled is None:
                        return None
                    if handled:
                        continue
                    pos = self._pos

                match = self._special.search(text, pos)
                if match is None:
                    self._append(text[pos:])
                    self._pos = len(text)
                    return None

                j = match.start()
                self._append(text[pos:j])
                self._pos = j
                ch = text[j]
                delim = self._delimiter

                if ch == delim[0]:
                    if text.startswith(delim, j):
                        self._pos = j + len(delim)
                        statement = self._emit()
                        if statement is not None:
                            return statement
                        continue
                    if not self._available(j, len(delim)):
                        return None

                if ch in "'\"`":
                    self._enter_quote(ch, j)
                elif ch == "-":
                    # MariaDB requires whitespace after "--"
                    need = 3 if self.hash_comments else 2
                    if not self._available(j, need):
                        return None
                    if text.startswith("--", j) and (
                        not self.hash_comments
                        or j + 2 >= len(text)
                        or text[j + 2].isspace()
                    ):
                        self._state = _LINE_COMMENT
                        self._pos = j + 2
                    else:
                        self._append(ch)
                        self._pos = j + 1
                elif ch == "#":
                    self._state = _LINE_COMMENT
                    self._pos = j + 1
                elif ch == "/":
                    if not self._available(j, 3):
                        return None
                    if text.startswith("/*", j):
                        self._state = _BLOCK_COMMENT
                        self._keep_comment = self.hash_comments and text.startswith(
                            "/*!", j
                        )
                        if self._keep_comment:
                            self._append("/*")
                        self._pos = j + 2
                    else:
                        self._append(ch)
                        self._pos = j + 1
                elif ch == "$" and self.dollar_quotes:
                    tag = _DOLLAR_TAG.match(text, j)
                    if tag is None:
                        if not self._eof and _PARTIAL_DOLLAR_TAG.match(text, j):
                            return None
                        self._append(ch)
                        self._pos = j + 1
                    elif _is_word_char(self._prev_char(j)):
                        # "$" inside an identifier such as a$b$
                        self._append(ch)
                        self._pos = j + 1
                    else:
                        self._tag = tag.group(0)
                        self._state = _DOLLAR
                        self._append(self._tag)
                        self._pos = tag.end()
                else:
                    self._append(ch)
                    self._pos = j + 1

            elif state == _QUOTE:
                q = self._quote
                if self._quote_pattern is not None:
                    found = self._quote_pattern.search(text, pos)
                    k = found.start() if found else -1
                else:
                    k = text.find(q, pos)

                if k == -1:
                    self._append(text[pos:])
                    self._pos = len(text)
                    return None

                if text[k] == "\\":
                    if not self._available(k, 2):
                        self._append(text[pos:k])
                        self._pos = k
                        return None
                    self._append(text[pos:k + 2])
                    self._pos = min(k + 2, len(text))
                    continue

                if not self._available(k, 2):
                    self._append(text[pos:k])
                    self._pos = k
                    return None
                if k + 1 < len(text) and text[k + 1] == q:
                    self._append(text[pos:k + 2])
                    self._pos = k + 2
                    continue
                self._append(text[pos:k + 1])
                self._pos = k + 1
                self._state = _NORMAL

            elif state == _LINE_COMMENT:
                k = text.find("\n", pos)
                if k == -1:
                    self._pos = len(text)
                    if self._eof:
                        self._state = _NORMAL
                    return None
                self._append("\n")
                self._pos = k + 1
                self._state = _NORMAL

            elif state == _BLOCK_COMMENT:
                k = text.find("*/", pos)
                if k == -1:
                    end = len(text)
                    if not self._eof and text.endswith("*"):
                        end = max(pos, end - 1)
                    if self._keep_comment:
                        self._append(text[pos:end])
                    self._pos = end
                    return None
                self._append(text[pos:k + 2] if self._keep_comment else " ")
                self._pos = k + 2
                self._state = _NORMAL

            else:  # _DOLLAR
                k = text.find(self._tag, pos)
                if k == -1:
                    end = len(text)
                    if not self._eof:
                        end = max(pos, end - (len(self._tag) - 1))
                    self._append(text[pos:end])
                    self._pos = end
                    return None
                end = k + len(self._tag)
                self._append(text[pos:end])
                self._pos = end
                self._state = _NORMAL

    def _enter_quote(self, quote: str, index: int) -> None:
        escapes = False
        if quote != "`":
            if self.backslash_escapes:
                escapes = True
            elif quote == "'" and self._prev_char(index) in ("e", "E"):
                # PostgreSQL E'...' escape string
                escapes = index < 2 or not _is_word_char(self._text[index - 2])
        self._quote = quote
        self._quote_pattern = (
            re.compile("[" + re.escape(quote + "\\") + "]") if escapes else None
        )
        self._state = _QUOTE
        self._append(quote)
        self._pos = index + 1

    def _delimiter_directive(self) -> Optional[bool]:
        """Handle a client ``DELIMITER xx`` line at the start of a statement.

        Returns:
            True if a directive was consumed, False if there is none, None if
            more input is needed to decide
        """
        text = self._text
        k = _LEADING_SPACE.match(text, self._pos).end()
        if k > self._pos:
            self._append(text[self._pos:k])
            self._pos = k
        if k >= len(text):
            return None if not self._eof else False

        head = text[k:k + 10].upper()
        if len(head) < 10:
            if self._eof or not "DELIMITER ".startswith(head):
                return False
            return None
        if not head.startswith("DELIMITER") or head[9] not in " \t":
            return False

        newline = text.find("\n", k)
        if newline == -1 and not self._eof:
            return None
        line_end = len(text) if newline == -1 else newline
        match = _DELIMITER_COMMAND.match(text[k:line_end])
        if match is None:
            return False

        self._set_delimiter(match.group(1))
        self._pos = min(line_end + 1, len(text))
        self._parts = []
        self._size = 0
        self._stmt_start = self._base + self._pos
        return True

    def _finish(self) -> Optional[str]:
        if self._state == _QUOTE:
            raise ParseError(
                f"Unterminated quoted string (opened with {self._quote})",
                offset=self._stmt_start,
            )
        if self._state == _BLOCK_COMMENT:
            raise ParseError("Unterminated block comment", offset=self._stmt_start)
        if self._state == _DOLLAR:
            raise ParseError(
                f"Unterminated dollar-quoted string ({self._tag})",
                offset=self._stmt_start,
            )
        self._done = True
        return self._emit()


class StatementWriter:
    """Write statements one per line, each terminated by ``delimiter``."""

    def __init__(self, sink: BinaryIO, encoding: str = "utf-8", delimiter: str = ";"):
        self._sink = sink
        self.encoding = encoding
        self.delimiter = delimiter
        self.statements_written = 0
        self.bytes_written = 0

    def _write(self, text: str) -> None:
        data = text.encode(self.encoding)
        self._sink.write(data)
        self.bytes_written += len(data)

    def write(self, statement: str) -> None:
        statement = statement.rstrip()
        if statement.endswith(self.delimiter):
            statement = statement[: -len(self.delimiter)]
        self._write(statement + self.delimiter + "\n")
        self.statements_written += 1

    def write_all(self, statements) -> None:
        for statement in statements:
            self.write(statement)

    def comment(self, text: str = "") -> None:
        for line in text.splitlines() or [""]:
            self._write(f"-- {line}".rstrip() + "\n")

    def blank(self) -> None:
        self._write("\n")
