"""
charsv: character-separated values, a strict reader/writer state machine (stdlib-only).

Contract (v0):
- A table is a list of records; a record is a non-empty list of str fields.
- Reading:
    any char in `separators` ends a field
    CR, LF and CRLF end a record; blank lines produce no record
    `encloser` may only open a field: "a ""quoted"" value", doubled to escape
    quoted spans may hold separators, tabs, CR and LF verbatim
    after a closing encloser only a separator, CR, LF or end of input may follow
    control chars other than tab (and CR/LF as terminators) are rejected
- Writing:
    fields joined by `separator`, records ended by `lineterminator`
    quoting is mandatory for values holding a separator, CR or LF
    (and for an empty field standing alone in its record);
    values holding the encloser are quoted too
    with encloser=None nothing is quoted; values needing quotes are rejected
- Errors: raise immediately; nothing is returned from a failed call.

API:
- parse(source, dialect) -> table (source: CharacterSource, str or text stream)
- serialize(table, sink, dialect) -> None (sink: anything with write(str))
- loads(text, dialect) / dumps(table, dialect) -> in-memory text helpers
- TextSource / StreamSource -> CharacterSource adapters

Python: 3.10+
"""

from __future__ import annotations

import enum
import io
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Protocol, Sequence, Union


logger = logging.getLogger(__name__)

__version__ = "0.1.0"

Field = str
Record = List[Field]
Table = List[Record]

_TERMINATORS = ("\n", "\r")


# ----------------------------
# Exceptions
# ----------------------------

class CharSVError(ValueError):
    """Base class for everything raised by charsv."""


class ArgumentError(CharSVError):
    """Raised on an invalid dialect or call argument."""

    def __init__(self, *, argument: str, reason: str) -> None:
        super().__init__(f"ArgumentError(argument={argument!r}): {reason}")
        self.argument = argument
        self.reason = reason


class ParseError(CharSVError):
    """Raised when the input is not valid under the dialect; carries the position."""

    def __init__(
        self,
        *,
        offset: int,
        line: int,
        column: int,
        char: Optional[str],
        reason: str,
    ) -> None:
        msg = (
            f"{type(self).__name__}("
            f"offset={offset}, line={line}, column={column}, char={char!r}): {reason}"
        )
        super().__init__(msg)
        self.offset = offset    # 0-based character offset of the offending char
        self.line = line        # 1-based, CRLF counts as one line break
        self.column = column    # 1-based within the line
        self.char = char        # offending character, None at end of input
        self.reason = reason


class InvalidCharacter(ParseError):
    """A control character outside the allowed set, in or out of quotes."""


class UnterminatedQuote(ParseError):
    """End of input inside a quoted span."""


class StructuralError(ParseError):
    """Encloser after field content, or content glued to a closing encloser."""


class SerializeError(CharSVError):
    """Raised when a table cannot be written under the dialect."""

    def __init__(self, *, row: int, col: int, value: str, reason: str) -> None:
        super().__init__(
            f"{type(self).__name__}(row={row}, col={col}, value={value!r}): {reason}"
        )
        self.row = row          # 0-based record index
        self.col = col          # 0-based field index
        self.value = value
        self.reason = reason


class CannotRepresentValue(SerializeError):
    """The value would not read back unchanged with this dialect."""


# ----------------------------
# Dialect
# ----------------------------

NO_ENCLOSER = None


def _check_char(name: str, c: Any) -> None:
    if not isinstance(c, str) or len(c) != 1:
        raise ArgumentError(argument=name, reason=f"Must be a single character, got {c!r}")
    if c in _TERMINATORS:
        raise ArgumentError(argument=name, reason="CR and LF are reserved as record terminators")


@dataclass(frozen=True)
class Dialect:
    separators: str = ","
    encloser: Optional[str] = '"'
    # primary separator for writing; first of `separators` when not given
    separator: Optional[str] = None
    lineterminator: str = "\r\n"

    def __post_init__(self) -> None:
        seps = self.separators
        if seps is None:
            raise ArgumentError(argument="separators", reason="Must not be None")
        if isinstance(seps, (set, frozenset)) and self.separator is None:
            raise ArgumentError(
                argument="separators",
                reason="Unordered separator set needs an explicit separator",
            )
        try:
            chars = list(seps)
        except TypeError:
            raise ArgumentError(
                argument="separators",
                reason=f"Must be a str or iterable of characters, got {type(seps).__name__}",
            ) from None
        for c in chars:
            _check_char("separators", c)
        seps = "".join(dict.fromkeys(chars))
        if not seps:
            raise ArgumentError(argument="separators", reason="Must not be empty")
        object.__setattr__(self, "separators", seps)

        if self.encloser is not NO_ENCLOSER:
            _check_char("encloser", self.encloser)
            if self.encloser in seps:
                raise ArgumentError(
                    argument="encloser",
                    reason=f"Encloser {self.encloser!r} is also a separator",
                )

        separator = seps[0] if self.separator is None else self.separator
        _check_char("separator", separator)
        if separator == self.encloser:
            raise ArgumentError(argument="separator", reason="Separator equals the encloser")
        if separator not in seps:
            raise ArgumentError(
                argument="separator",
                reason=f"Separator {separator!r} is not one of the separators {seps!r}",
            )
        object.__setattr__(self, "separator", separator)

        term = self.lineterminator
        if not isinstance(term, str) or not term or any(c not in _TERMINATORS for c in term):
            raise ArgumentError(
                argument="lineterminator",
                reason=f"Must be a non-empty run of CR/LF characters, got {term!r}",
            )

    @property
    def quoting(self) -> bool:
        return self.encloser is not NO_ENCLOSER


DEFAULT = Dialect()


# ----------------------------
# Character sources / sinks
# ----------------------------

class CharacterSource(Protocol):
    def read(self) -> Optional[str]: ...

    def peek(self) -> Optional[str]: ...

    def has_more(self) -> bool: ...


class CharacterSink(Protocol):
    def write(self, text: str) -> Any: ...


class TextSource:
    """CharacterSource over an in-memory string."""

    def __init__(self, text: str) -> None:
        self._text = text
        self._pos = 0

    def read(self) -> Optional[str]:
        if self._pos >= len(self._text):
            return None
        c = self._text[self._pos]
        self._pos += 1
        return c

    def peek(self) -> Optional[str]:
        if self._pos >= len(self._text):
            return None
        return self._text[self._pos]

    def has_more(self) -> bool:
        return self._pos < len(self._text)


class StreamSource:
    """
    CharacterSource over a readable text stream, pulling `chunk_size` characters at a time.
    The stream is neither opened nor closed here. Open files with newline="" so that
    CR/LF reach the parser untranslated.
    """

    def __init__(self, stream: Any, chunk_size: int = 8192) -> None:
        if chunk_size < 1:
            raise ArgumentError(argument="chunk_size", reason="Must be positive")
        self._stream = stream
        self._chunk_size = chunk_size
        self._buf = ""
        self._pos = 0
        self._eof = False

    def _fill(self) -> bool:
        if self._pos < len(self._buf):
            return True
        if self._eof:
            return False
        chunk = self._stream.read(self._chunk_size)
        if isinstance(chunk, (bytes, bytearray)):
            raise ArgumentError(argument="stream", reason="Expected a text stream, got bytes")
        if not chunk:
            self._eof = True
            return False
        self._buf = chunk
        self._pos = 0
        return True

    def read(self) -> Optional[str]:
        if not self._fill():
            return None
        c = self._buf[self._pos]
        self._pos += 1
        return c

    def peek(self) -> Optional[str]:
        if not self._fill():
            return None
        return self._buf[self._pos]

    def has_more(self) -> bool:
        return self._fill()


def _as_source(source: Any) -> CharacterSource:
    if isinstance(source, str):
        return TextSource(source)
    if all(hasattr(source, name) for name in ("read", "peek", "has_more")):
        return source
    if hasattr(source, "read"):
        return StreamSource(source)
    raise ArgumentError(
        argument="source",
        reason=f"Expected a CharacterSource, str or text stream, got {type(source).__name__}",
    )


# ----------------------------
# Parser
# ----------------------------

class _State(enum.Enum):
    UNQUOTED = "unquoted"
    IN_QUOTE = "in_quote"
    JUST_CLOSED_QUOTE = "just_closed_quote"


class _Parser:
    """One-shot state machine; feed() every character, then finish()."""

    def __init__(self, dialect: Dialect) -> None:
        self._seps = dialect.separators
        self._enc = dialect.encloser
        self._state = _State.UNQUOTED
        self._table: Table = []
        self._record: Record = []
        self._field: List[str] = []
        self._quoted = False

        # position of the character being fed
        self._offset = -1
        self._line = 1
        self._column = 0
        self._prev: Optional[str] = None

    def _error(self, cls: type, char: Optional[str], reason: str) -> ParseError:
        offset, column = self._offset, self._column
        if char is None:
            offset, column = offset + 1, column + 1
        return cls(offset=offset, line=self._line, column=column, char=char, reason=reason)

    def _advance(self, c: str) -> None:
        if self._prev == "\r" and c == "\n":
            pass
        elif self._prev in _TERMINATORS:
            self._line += 1
            self._column = 0
        self._offset += 1
        self._column += 1
        self._prev = c

    def _close_field(self) -> None:
        self._record.append("".join(self._field))
        self._field = []
        self._quoted = False

    def _close_record(self) -> None:
        if self._field or self._quoted or self._record:
            self._close_field()
        if self._record:
            self._table.append(self._record)
            self._record = []

    def feed(self, c: str) -> None:
        self._advance(c)
        state = self._state

        if state is _State.IN_QUOTE:
            if c == self._enc:
                self._state = _State.JUST_CLOSED_QUOTE
            elif c >= " " or c in "\t\r\n":
                self._field.append(c)
            else:
                raise self._error(InvalidCharacter, c, "Invalid control character in quoted value")
            return

        if state is _State.JUST_CLOSED_QUOTE:
            if c == self._enc:
                self._field.append(c)
                self._state = _State.IN_QUOTE
                return
            if c not in self._seps and c not in _TERMINATORS:
                raise self._error(
                    StructuralError, c, "Non-separator character found after closing encloser"
                )
            self._state = _State.UNQUOTED

        if self._enc is not None and c == self._enc:
            if self._field:
                raise self._error(StructuralError, c, "Encloser found after first character in value")
            self._quoted = True
            self._state = _State.IN_QUOTE
        elif c in self._seps:
            self._close_field()
        elif c >= " " or c == "\t":
            self._field.append(c)
        elif c in _TERMINATORS:
            self._close_record()
        else:
            raise self._error(InvalidCharacter, c, "Invalid control character")

    def finish(self) -> Table:
        if self._state is _State.IN_QUOTE:
            raise self._error(UnterminatedQuote, None, "End of input inside quoted value")
        self._state = _State.UNQUOTED
        self._close_record()
        return self._table


def parse(source: Union[CharacterSource, str, Any], dialect: Dialect = DEFAULT) -> Table:
    """
    Read every character from `source` and return the complete table.
    Raises ParseError (InvalidCharacter, UnterminatedQuote, StructuralError) on
    malformed input; ArgumentError on a bad dialect or source.
    """
    if not isinstance(dialect, Dialect):
        raise ArgumentError(argument="dialect", reason=f"Expected Dialect, got {type(dialect).__name__}")
    src = _as_source(source)
    parser = _Parser(dialect)
    try:
        while src.has_more():
            c = src.read()
            if c is None:
                break
            parser.feed(c)
        table = parser.finish()
    except ParseError as e:
        logger.debug("parse failed: %s", e)
        raise
    logger.debug("parsed %d records", len(table))
    return table


# ----------------------------
# Serializer
# ----------------------------

def _needs_quotes(value: str, record_len: int, dialect: Dialect) -> bool:
    if value == "":
        return record_len == 1
    if any(c in _TERMINATORS for c in value):
        return True
    return dialect.separator in value or any(c in dialect.separators for c in value)


def _check_value(value: Any, *, row: int, col: int) -> str:
    if not isinstance(value, str):
        raise ArgumentError(
            argument="table",
            reason=f"Field at row={row}, col={col} is {type(value).__name__}, expected str",
        )
    for c in value:
        if c < " " and c not in "\t\r\n":
            raise CannotRepresentValue(
                row=row, col=col, value=value,
                reason=f"Control character {c!r} cannot be read back",
            )
    return value


def _format_record(record: Sequence[str], row: int, dialect: Dialect) -> str:
    if not record:
        raise CannotRepresentValue(row=row, col=0, value="", reason="Record has no fields")

    enc = dialect.encloser
    out: List[str] = []
    for col, raw in enumerate(record):
        value = _check_value(raw, row=row, col=col)
        if _needs_quotes(value, len(record), dialect):
            if enc is None:
                raise CannotRepresentValue(
                    row=row, col=col, value=value,
                    reason="Need enclosing character to write the data",
                )
            out.append(enc + value.replace(enc, enc + enc) + enc)
        elif enc is not None and enc in value:
            out.append(enc + value.replace(enc, enc + enc) + enc)
        else:
            out.append(value)
    return dialect.separator.join(out) + dialect.lineterminator


def serialize(table: Iterable[Sequence[str]], sink: CharacterSink, dialect: Dialect = DEFAULT) -> None:
    """
    Write every record of `table` to `sink`, one terminator after each record.
    The whole table is checked before anything is written; a failed call leaves the sink untouched.
    """
    if not isinstance(dialect, Dialect):
        raise ArgumentError(argument="dialect", reason=f"Expected Dialect, got {type(dialect).__name__}")
    if isinstance(table, str):
        raise ArgumentError(argument="table", reason="Expected a sequence of records, got str")
    parts: List[str] = []
    try:
        for i, record in enumerate(table):
            if isinstance(record, str):
                raise ArgumentError(argument="table", reason=f"Record {i} is a str, expected a sequence")
            parts.append(_format_record(record, i, dialect))
    except SerializeError as e:
        logger.debug("serialize failed: %s", e)
        raise
    sink.write("".join(parts))
    logger.debug("serialized %d records", len(parts))


# ----------------------------
# In-memory helpers
# ----------------------------

def loads(text: str, dialect: Dialect = DEFAULT) -> Table:
    return parse(TextSource(text), dialect)


def dumps(table: Iterable[Sequence[str]], dialect: Dialect = DEFAULT) -> str:
    buf = io.StringIO()
    serialize(table, buf, dialect)
    return buf.getvalue()


__all__ = [
    "CharSVError",
    "ArgumentError",
    "ParseError",
    "InvalidCharacter",
    "UnterminatedQuote",
    "StructuralError",
    "SerializeError",
    "CannotRepresentValue",
    "Dialect",
    "DEFAULT",
    "NO_ENCLOSER",
    "CharacterSource",
    "CharacterSink",
    "TextSource",
    "StreamSource",
    "parse",
    "serialize",
    "loads",
    "dumps",
    "__version__",
]
