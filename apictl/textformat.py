# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Human-readable text encoding of typed messages.

The format is the field-name/value notation of the protocol-buffers text
format, applied to :class:`~apictl.message.TypedMessage` dataclasses::

    name: "inbound>>>api>>>traffic>>>uplink"
    reset: true

Nested messages use braces (``stat { name: "x" value: 3 }``; a colon before
the brace and ``< ... >`` delimiters are also accepted), repeated fields
repeat the field name or use list syntax (``stat: [{...}, {...}]``), and
``#`` starts a comment.  Fields equal to their default are omitted when
encoding, so a default-valued message encodes to the empty string and
``decode(encode(m), type(m)) == m`` holds for every valid message.

KEY FUNCTIONS
-------------
decode(text, message_type) : Parse text into a message, raising DecodeError
encode(message) : Render a message as text, raising EncodeError

"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, TypeVar

import pyarrow as pa

from apictl.errors import DecodeError, EncodeError
from apictl.message import FieldKind, MessageField, TypedMessage

M = TypeVar("M", bound=TypedMessage)

__all__ = ["decode", "encode"]

_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*", re.ASCII)
_NUMBER_RE = re.compile(r"[-+]?(?:0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)", re.ASCII)
_SYMBOLS = frozenset("{}<>[]:,;-")
_DIGITS = frozenset("0123456789")

_SIMPLE_ESCAPES: dict[str, int] = {
    "n": 0x0A,
    "r": 0x0D,
    "t": 0x09,
    "a": 0x07,
    "b": 0x08,
    "f": 0x0C,
    "v": 0x0B,
    "\\": 0x5C,
    "'": 0x27,
    '"': 0x22,
    "?": 0x3F,
}
_QUOTE_ESCAPES: dict[int, str] = {0x0A: "\\n", 0x0D: "\\r", 0x09: "\\t", 0x5C: "\\\\", 0x22: '\\"'}

_TRUE_LITERALS = frozenset({"true", "True", "t", "1"})
_FALSE_LITERALS = frozenset({"false", "False", "f", "0"})
_INF_LITERALS = frozenset({"inf", "infinity"})


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Token:
    """A lexical token with its 1-based source position."""

    kind: str  # "ident" | "number" | "string" | "symbol" | "eof"
    text: str
    line: int
    column: int
    data: bytes = b""

    def is_symbol(self, symbol: str) -> bool:
        return self.kind == "symbol" and self.text == symbol

    def describe(self) -> str:
        if self.kind == "eof":
            return "end of input"
        return f"'{self.text}'"


class _Tokenizer:
    """Splits text into tokens, tracking line and column."""

    def __init__(self, text: str, message_type: str) -> None:
        self._text = text
        self._message_type = message_type
        self._pos = 0
        self._line = 1
        self._line_start = 0

    def _error(self, reason: str, line: int, column: int) -> DecodeError:
        return DecodeError(reason, line=line, column=column, message_type=self._message_type)

    def tokenize(self) -> list[_Token]:
        text = self._text
        tokens: list[_Token] = []
        while self._pos < len(text):
            ch = text[self._pos]
            column = self._pos - self._line_start + 1
            if ch == "\n":
                self._pos += 1
                self._line += 1
                self._line_start = self._pos
            elif ch.isspace():
                self._pos += 1
            elif ch == "#":
                end = text.find("\n", self._pos)
                self._pos = len(text) if end == -1 else end
            elif ch in "\"'":
                tokens.append(self._read_string(ch, column))
            elif ch in _DIGITS or (ch in "-+." and self._starts_number()):
                tokens.append(self._read_number(column))
            elif ch in _SYMBOLS:
                tokens.append(_Token("symbol", ch, self._line, column))
                self._pos += 1
            elif (match := _IDENT_RE.match(text, self._pos)) is not None:
                tokens.append(_Token("ident", match.group(), self._line, column))
                self._pos = match.end()
            else:
                raise self._error(f"unexpected character {ch!r}", self._line, column)
        tokens.append(_Token("eof", "", self._line, self._pos - self._line_start + 1))
        return tokens

    def _starts_number(self) -> bool:
        rest = self._text[self._pos + 1 : self._pos + 3]
        return bool(rest) and (rest[0] in _DIGITS or (rest[0] == "." and rest[1:2] in _DIGITS))

    def _read_number(self, column: int) -> _Token:
        match = _NUMBER_RE.match(self._text, self._pos)
        if match is None:
            raise self._error("invalid number", self._line, column)
        end = match.end()
        if end < len(self._text) and (self._text[end].isalnum() or self._text[end] in "_."):
            raise self._error(f"invalid number '{self._text[self._pos : end + 1]}'", self._line, column)
        self._pos = end
        return _Token("number", match.group(), self._line, column)

    def _read_string(self, quote: str, column: int) -> _Token:
        text = self._text
        start = self._pos
        pos = start + 1
        out = bytearray()
        while True:
            if pos >= len(text) or text[pos] == "\n":
                raise self._error("unterminated string literal", self._line, column)
            ch = text[pos]
            if ch == quote:
                pos += 1
                break
            if ch != "\\":
                out += ch.encode("utf-8")
                pos += 1
                continue
            pos += 1
            if pos >= len(text):
                raise self._error("unterminated string literal", self._line, column)
            esc = text[pos]
            if esc in _SIMPLE_ESCAPES:
                out.append(_SIMPLE_ESCAPES[esc])
                pos += 1
            elif esc in "01234567":
                digits = re.match(r"[0-7]{1,3}", text[pos : pos + 3])
                assert digits is not None
                value = int(digits.group(), 8)
                if value > 0xFF:
                    raise self._error(f"octal escape \\{digits.group()} out of range", self._line, column)
                out.append(value)
                pos += len(digits.group())
            elif esc == "x":
                digits = re.match(r"[0-9a-fA-F]{1,2}", text[pos + 1 : pos + 3])
                if digits is None:
                    raise self._error("\\x escape needs hex digits", self._line, column)
                out.append(int(digits.group(), 16))
                pos += 1 + len(digits.group())
            elif esc in "uU":
                width = 4 if esc == "u" else 8
                digits = re.fullmatch(r"[0-9a-fA-F]+", text[pos + 1 : pos + 1 + width])
                if digits is None or len(digits.group()) != width:
                    raise self._error(f"\\{esc} escape needs {width} hex digits", self._line, column)
                codepoint = int(digits.group(), 16)
                if codepoint > 0x10FFFF:
                    raise self._error(f"\\{esc} escape out of range", self._line, column)
                out += chr(codepoint).encode("utf-8", errors="surrogatepass")
                pos += 1 + width
            else:
                raise self._error(f"invalid escape sequence '\\{esc}'", self._line, column)
        self._pos = pos
        return _Token("string", text[start:pos], self._line, column, bytes(out))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _int_bounds(arrow_type: pa.DataType) -> tuple[int, int]:
    """Return the inclusive (min, max) range of an Arrow integer type."""
    bits = arrow_type.bit_width
    if pa.types.is_unsigned_integer(arrow_type):
        return 0, (1 << bits) - 1
    return -(1 << (bits - 1)), (1 << (bits - 1)) - 1


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: list[_Token], message_type: str) -> None:
        self._tokens = tokens
        self._index = 0
        self._message_type = message_type

    def _error(self, reason: str, token: _Token) -> DecodeError:
        return DecodeError(reason, line=token.line, column=token.column, message_type=self._message_type)

    def _peek(self) -> _Token:
        return self._tokens[self._index]

    def _next(self) -> _Token:
        token = self._tokens[self._index]
        if token.kind != "eof":
            self._index += 1
        return token

    def _accept(self, symbol: str) -> bool:
        if self._peek().is_symbol(symbol):
            self._index += 1
            return True
        return False

    def _expect(self, symbol: str) -> None:
        token = self._next()
        if not token.is_symbol(symbol):
            raise self._error(f"expected '{symbol}', found {token.describe()}", token)

    def parse_message(self, message_type: type[M], end: str | None) -> M:
        values: dict[str, Any] = {}
        while True:
            token = self._peek()
            if end is not None and token.is_symbol(end):
                self._next()
                break
            if token.kind == "eof":
                if end is not None:
                    raise self._error(f"expected '{end}', found end of input", token)
                break
            name_token = self._next()
            if name_token.kind != "ident":
                raise self._error(f"expected field name, found {name_token.describe()}", name_token)
            field = message_type.field_named(name_token.text)
            if field is None:
                raise self._error(
                    f'unknown field name "{name_token.text}" in {message_type.__name__}', name_token
                )
            if field.name in values and not field.repeated:
                raise self._error(f'non-repeated field "{field.name}" is specified multiple times', name_token)
            self._parse_field(field, values)
            if not self._accept(","):
                self._accept(";")
        try:
            return message_type(**values)
        except (TypeError, ValueError) as exc:
            raise DecodeError(
                f"cannot build {message_type.__name__}: {exc}", message_type=self._message_type
            ) from exc

    def _parse_field(self, field: MessageField, values: dict[str, Any]) -> None:
        if field.kind is FieldKind.MESSAGE:
            self._accept(":")
        else:
            self._expect(":")
        token = self._peek()
        if token.is_symbol("["):
            if not field.repeated:
                raise self._error(f'list value for non-repeated field "{field.name}"', token)
            self._next()
            items = values.setdefault(field.name, [])
            if self._accept("]"):
                return
            while True:
                items.append(self._parse_value(field))
                if self._accept("]"):
                    return
                self._expect(",")
        value = self._parse_value(field)
        if field.repeated:
            values.setdefault(field.name, []).append(value)
        else:
            values[field.name] = value

    def _parse_value(self, field: MessageField) -> Any:
        if field.kind is FieldKind.MESSAGE:
            token = self._next()
            if token.is_symbol("{"):
                return self.parse_message(field.value_type, "}")
            if token.is_symbol("<"):
                return self.parse_message(field.value_type, ">")
            raise self._error(f"expected '{{' for message field \"{field.name}\", found {token.describe()}", token)
        token = self._next()
        if field.kind in (FieldKind.STRING, FieldKind.BYTES):
            return self._parse_string(field, token)
        if field.kind is FieldKind.INT:
            return self._parse_int(field, token)
        if field.kind is FieldKind.FLOAT:
            return self._parse_float(field, token)
        if field.kind is FieldKind.BOOL:
            return self._parse_bool(field, token)
        return self._parse_enum(field, token)

    def _invalid(self, field: MessageField, token: _Token) -> DecodeError:
        return self._error(f'invalid {field.kind.value} value {token.describe()} for field "{field.name}"', token)

    def _parse_string(self, field: MessageField, token: _Token) -> str | bytes:
        if token.kind != "string":
            raise self._invalid(field, token)
        data = token.data
        while self._peek().kind == "string":
            data += self._next().data
        if field.kind is FieldKind.BYTES:
            return data
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            raise self._error(f'invalid UTF-8 in string for field "{field.name}"', token) from None

    def _parse_int(self, field: MessageField, token: _Token) -> int:
        if token.kind != "number":
            raise self._invalid(field, token)
        text = token.text
        unsigned = text.lstrip("+-")
        try:
            if unsigned[:2].lower() == "0x":
                value = int(unsigned[2:], 16)
                if text.startswith("-"):
                    value = -value
            else:
                value = int(text, 10)
        except ValueError:
            raise self._invalid(field, token) from None
        low, high = _int_bounds(field.arrow_type)
        if not low <= value <= high:
            raise self._error(f'integer {text} out of range for {field.arrow_type} field "{field.name}"', token)
        return value

    def _parse_float(self, field: MessageField, token: _Token) -> float:
        negative = False
        if token.is_symbol("-"):
            negative = True
            token = self._next()
        if token.kind == "ident":
            word = token.text.lower()
            if word in _INF_LITERALS:
                return -math.inf if negative else math.inf
            if word == "nan":
                return math.nan
            raise self._invalid(field, token)
        if token.kind != "number" or negative:
            raise self._invalid(field, token)
        text = token.text
        unsigned = text.lstrip("+-")
        if unsigned[:2].lower() == "0x":
            value = float(int(unsigned[2:], 16))
            return -value if text.startswith("-") else value
        return float(text)

    def _parse_bool(self, field: MessageField, token: _Token) -> bool:
        if token.kind in ("ident", "number"):
            if token.text in _TRUE_LITERALS:
                return True
            if token.text in _FALSE_LITERALS:
                return False
        raise self._invalid(field, token)

    def _parse_enum(self, field: MessageField, token: _Token) -> Any:
        enum_type = field.value_type
        if token.kind == "ident":
            member = enum_type.__members__.get(token.text)
            if member is not None:
                return member
        elif token.kind == "number":
            for member in enum_type:
                if isinstance(member.value, int) and str(member.value) == token.text.lstrip("+"):
                    return member
        else:
            raise self._invalid(field, token)
        raise self._error(f'unknown value {token.describe()} for enum {enum_type.__name__} field "{field.name}"', token)


def decode(text: str, message_type: type[M]) -> M:
    """Parse *text* into an instance of *message_type*.

    Args:
        text: Message in text format.  Empty text yields the default message.
        message_type: The ``TypedMessage`` subclass to decode into.

    Returns:
        The decoded message.

    Raises:
        DecodeError: If the text is syntactically invalid, names a field the
            message does not declare, repeats a non-repeated field, or
            supplies a value of the wrong type or out of range.
        TypeError: If *message_type* is not a ``TypedMessage`` subclass.

    """
    if not (isinstance(message_type, type) and issubclass(message_type, TypedMessage)):
        raise TypeError(f"Expected a TypedMessage subclass, got {message_type!r}")
    name = message_type.__name__
    tokens = _Tokenizer(text, name).tokenize()
    return _Parser(tokens, name).parse_message(message_type, None)


# ---------------------------------------------------------------------------
# Encoder
# ---------------------------------------------------------------------------


def _quote(data: bytes, *, utf8: bool) -> str:
    """Quote *data* as a double-quoted literal.

    With *utf8*, printable non-ASCII characters are kept as-is; otherwise
    every byte outside printable ASCII is written as an octal escape.
    """
    parts: list[str] = ['"']
    if utf8:
        for ch in data.decode("utf-8"):
            code = ord(ch)
            if code in _QUOTE_ESCAPES:
                parts.append(_QUOTE_ESCAPES[code])
            elif code < 0x20 or code == 0x7F:
                parts.append(f"\\{code:03o}")
            else:
                parts.append(ch)
    else:
        for byte in data:
            if byte in _QUOTE_ESCAPES:
                parts.append(_QUOTE_ESCAPES[byte])
            elif 0x20 <= byte < 0x7F:
                parts.append(chr(byte))
            else:
                parts.append(f"\\{byte:03o}")
    parts.append('"')
    return "".join(parts)


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "nan"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return repr(value)


class _Encoder:
    """Renders a message tree as indented text lines."""

    def __init__(self) -> None:
        self._lines: list[str] = []

    def text(self) -> str:
        return "".join(self._lines)

    def message(self, message: TypedMessage, indent: int) -> None:
        owner = type(message).__name__
        for field in message.message_fields():
            value = getattr(message, field.name)
            if value is None:
                if field.optional or field.default() is None:
                    continue
                raise EncodeError("None for a non-optional field", message_type=owner, field=field.name)
            if field.repeated:
                if not isinstance(value, (list, tuple)):
                    raise EncodeError(
                        f"expected a list, got {type(value).__name__}", message_type=owner, field=field.name
                    )
                for item in value:
                    self.value(field, item, indent, owner)
            elif not field.is_default(value):
                self.value(field, value, indent, owner)

    def value(self, field: MessageField, value: Any, indent: int, owner: str) -> None:
        pad = "  " * indent
        if field.kind is FieldKind.MESSAGE:
            if not isinstance(value, field.value_type):
                raise EncodeError(
                    f"expected {field.value_type.__name__}, got {type(value).__name__}",
                    message_type=owner,
                    field=field.name,
                )
            self._lines.append(f"{pad}{field.name} {{\n")
            self.message(value, indent + 1)
            self._lines.append(f"{pad}}}\n")
            return
        self._lines.append(f"{pad}{field.name}: {_format_scalar(field, value, owner)}\n")


def _format_scalar(field: MessageField, value: Any, owner: str) -> str:
    """Format one scalar value of *field*, checking it against the declared type."""
    kind = field.kind
    if kind is FieldKind.STRING and isinstance(value, str):
        try:
            data = value.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise EncodeError(
                f"string is not valid UTF-8 ({exc.reason})", message_type=owner, field=field.name
            ) from exc
        return _quote(data, utf8=True)
    if kind is FieldKind.BYTES and isinstance(value, (bytes, bytearray)):
        return _quote(bytes(value), utf8=False)
    if kind is FieldKind.BOOL and isinstance(value, bool):
        return "true" if value else "false"
    if kind is FieldKind.INT and isinstance(value, int) and not isinstance(value, bool):
        low, high = _int_bounds(field.arrow_type)
        if not low <= value <= high:
            raise EncodeError(f"integer {value} out of range for {field.arrow_type}", message_type=owner, field=field.name)
        return str(value)
    if kind is FieldKind.FLOAT and isinstance(value, (int, float)) and not isinstance(value, bool):
        return _format_float(float(value))
    if kind is FieldKind.ENUM and isinstance(value, field.value_type):
        return str(value.name)
    raise EncodeError(
        f"expected {kind.value} value, got {type(value).__name__}", message_type=owner, field=field.name
    )


def encode(message: TypedMessage) -> str:
    """Render *message* in text format.

    Fields equal to their default are omitted, so a default-valued message
    renders as the empty string.  Each field occupies one line; nested
    messages are indented by two spaces.

    Raises:
        EncodeError: If *message* is not a ``TypedMessage`` or a field holds
            a value that does not match its declared type.

    """
    if not isinstance(message, TypedMessage):
        raise EncodeError(f"expected a TypedMessage, got {type(message).__name__}")
    encoder = _Encoder()
    encoder.message(message, 0)
    return encoder.text()
