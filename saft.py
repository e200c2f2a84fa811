"""
SAFT - Lexer, Parser and Element Tree

A strict, data-only, zero-dependency parser for SAFT documents. A document
is a sequence of root elements, each being a string, a list or an
association list (ordered key/value pairs, duplicate keys permitted).

    {
        name: example      // comments run to the end of the line
        hosts: [alpha /srv/beta "gamma\\tdelta" `raw \\string`]
        name: again        // keys may repeat, order is kept
    }
    [root level list] root-level-string

Usage:
    import saft

    # Load from string
    elems = saft.loads('{host:localhost port:8080}')
    assoc = elems[0].expect_assoc()
    port = assoc.pairs.find('port')[0].value.expect_string().to_uint32()

    # Load from file
    with open('config.saft', encoding='utf-8') as f:
        elems = saft.load(f)

Errors are raised as a single SaftError subclass whose text has the form
"<line>:<column>: <message>". Lines start at 1, columns at 0 and a tab
advances the column to the next multiple of 8.
"""

import argparse
import io
import ipaddress
import logging
import math
import re
import struct
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, NamedTuple, Optional, TextIO, Union

__all__ = [
    'parse', 'load', 'loads', 'tokenize', 'main',
    'LexPos', 'Token', 'TokenKind',
    'Elem', 'String', 'List', 'Assoc', 'Pair', 'Pairs',
    'SaftError', 'LexError', 'ParseError', 'ElemTypeError', 'ConversionError',
]

logger = logging.getLogger(__name__)

TAB_WIDTH = 8

# ==========================================
# Positions & Errors
# ==========================================

@dataclass(frozen=True)
class LexPos:
    """Line and column of a lexed character, token or element."""
    line: int = 0
    column: int = 0

    def advance(self, ch: str) -> 'LexPos':
        """Return the position following the consumed character ch."""
        if ch == '\t':
            return LexPos(self.line, self.column + TAB_WIDTH - self.column % TAB_WIDTH)
        if ch == '\n':
            return LexPos(self.line + 1, 0)
        return LexPos(self.line, self.column + 1)

    def __str__(self):
        return f"{self.line}:{self.column}"


class SaftError(Exception):
    def __init__(self, message: str, pos: LexPos):
        super().__init__(f"{pos}: {message}")
        self.message = message
        self.pos = pos
        self.line = pos.line
        self.col = pos.column

class LexError(SaftError):
    pass

class ParseError(SaftError):
    pass

class ElemTypeError(SaftError, TypeError):
    pass

class ConversionError(SaftError, ValueError):
    pass


class _ErrorSink:
    """Holds the first error sent to it; later errors are dropped."""

    def __init__(self):
        self._cause = None

    def send(self, err: Optional[SaftError]):
        if err is not None and self._cause is None:
            self._cause = err

    def ok(self) -> bool:
        return self._cause is None

    def cause(self) -> Optional[SaftError]:
        return self._cause

# ==========================================
# Tokens
# ==========================================

class TokenKind(Enum):
    EOF = '<eof>'
    SPACE = '<space>'            # whitespace run, comments folded in
    SYMBOL_STRING = '<symbol-string>'
    INTERP_STRING = '<interp-string>'
    RAW_STRING = '<raw-string>'
    COLON = ':'
    LBRACE = '{'
    RBRACE = '}'
    LBRACKET = '['
    RBRACKET = ']'

    @property
    def is_string(self) -> bool:
        return self in _STRING_KINDS

    def __str__(self):
        return self.value

_STRING_KINDS = frozenset({TokenKind.SYMBOL_STRING, TokenKind.INTERP_STRING, TokenKind.RAW_STRING})
_KEY_KINDS = frozenset({TokenKind.SYMBOL_STRING, TokenKind.INTERP_STRING})

_STRUCTURAL = {
    ':': TokenKind.COLON,
    '{': TokenKind.LBRACE, '}': TokenKind.RBRACE,
    '[': TokenKind.LBRACKET, ']': TokenKind.RBRACKET,
}

_ESCAPES = {'\\': '\\', '"': '"', 'n': '\n', 'r': '\r', 't': '\t'}

# Characters ending a symbol string besides whitespace. A lone '/' is
# symbol content; only '//' ends the symbol.
_SYMBOL_STOP = frozenset('\\`"{}[]:/')

@dataclass
class Token:
    kind: TokenKind
    text: Optional[str]
    pos: LexPos

    def __str__(self):
        if not self.text:
            return str(self.kind)
        return f"{self.kind} {self.text!r}"

# ==========================================
# Lexer
# ==========================================

class _Rune(NamedTuple):
    char: Optional[str]  # None at end of stream
    pos: LexPos          # position before the character was consumed


# str.isspace() also accepts the ASCII separators FS, GS, RS and US; they are
# symbol content here.
_NOT_SPACE = frozenset('\x1c\x1d\x1e\x1f')

def _is_space(ch: Optional[str]) -> bool:
    return ch is not None and ch.isspace() and ch not in _NOT_SPACE

def _is_symbol_char(ch: Optional[str]) -> bool:
    return ch is not None and not _is_space(ch) and ch not in _SYMBOL_STOP


class _RuneReader:
    """Reads characters one at a time with pushback and position tracking."""

    def __init__(self, stream: TextIO, sink: _ErrorSink):
        self._stream = stream
        self._sink = sink
        self._pushback = []
        self._eof = False
        self.pos = LexPos(1, 0)

    def read(self) -> _Rune:
        if self._pushback:
            return self._pushback.pop()

        rune = _Rune(None, self.pos)
        # EOF is sticky, also after a read error
        if self._eof:
            return rune
        try:
            ch = self._stream.read(1)
        except (OSError, UnicodeDecodeError) as exc:
            err = LexError(str(exc) or type(exc).__name__, self.pos)
            err.__cause__ = exc
            self.stop()
            self._sink.send(err)
            return rune
        if not ch:
            self._eof = True
            return rune
        self.pos = self.pos.advance(ch)
        return _Rune(ch, rune.pos)

    def unread(self, rune: _Rune):
        if rune.char is not None:
            self._pushback.append(rune)

    def peek(self) -> _Rune:
        rune = self.read()
        self.unread(rune)
        return rune

    def stop(self):
        self._eof = True
        self._pushback.clear()


class _Lexer:
    def __init__(self, stream: TextIO, sink: _ErrorSink):
        self._runes = _RuneReader(stream, sink)
        self._sink = sink
        self._prev_kind = TokenKind.EOF

    def _error(self, message: str, pos: LexPos) -> Token:
        self._runes.stop()
        self._sink.send(LexError(message, pos))
        return Token(TokenKind.EOF, None, self._runes.pos)

    def read_token(self) -> Token:
        """Return the next token. EOF is returned last, and after any error."""
        token = self._scan() if self._sink.ok() else None
        if not self._sink.ok():
            token = Token(TokenKind.EOF, None, self._runes.pos)
        self._prev_kind = token.kind
        return token

    def _scan(self) -> Token:
        while True:
            rune = self._runes.read()
            ch = rune.char
            if ch is None:
                return Token(TokenKind.EOF, None, rune.pos)

            if ch == '/':
                second = self._runes.read()
                if second.char == '/':
                    self._skip_comment()
                    continue
                self._runes.unread(second)
                return self._lex_symbol_string(rune)

            if _is_space(ch):
                token = self._lex_space(rune)
                # "space comment space" must still be a single space token
                if self._prev_kind is TokenKind.SPACE:
                    continue
                return token

            if ch in _STRUCTURAL:
                return Token(_STRUCTURAL[ch], None, rune.pos)
            if ch == '"':
                return self._lex_interpreted_string(rune)
            if ch == '`':
                return self._lex_raw_string(rune)
            return self._lex_symbol_string(rune)

    def _lex_space(self, first: _Rune) -> Token:
        rune = self._runes.read()
        while _is_space(rune.char):
            rune = self._runes.read()
        self._runes.unread(rune)
        return Token(TokenKind.SPACE, None, first.pos)

    def _skip_comment(self):
        rune = self._runes.read()
        while rune.char is not None and rune.char != '\n':
            rune = self._runes.read()
        self._runes.unread(rune)

    def _check_separated(self, first: _Rune) -> Optional[Token]:
        # Two string tokens are never adjacent: a"a" and "a"a are rejected here.
        if self._prev_kind.is_string:
            return self._error("strings must be separated", first.pos)
        return None

    def _lex_interpreted_string(self, first: _Rune) -> Token:
        joined = self._check_separated(first)
        if joined is not None:
            return joined

        content = []
        escape = False
        rune = self._runes.read()
        while rune.char is not None:
            ch = rune.char
            if escape:
                if ch not in _ESCAPES:
                    return self._error("unknown escape sequence", rune.pos)
                content.append(_ESCAPES[ch])
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '\n' or ch == '\r':
                return self._error("newline in string", rune.pos)
            elif ch == '"':
                return Token(TokenKind.INTERP_STRING, ''.join(content), first.pos)
            else:
                content.append(ch)
            rune = self._runes.read()
        return self._error("unterminated string", rune.pos)

    def _lex_raw_string(self, first: _Rune) -> Token:
        joined = self._check_separated(first)
        if joined is not None:
            return joined

        content = []
        rune = self._runes.read()
        while rune.char is not None:
            if rune.char == '`':
                return Token(TokenKind.RAW_STRING, ''.join(content), first.pos)
            content.append(rune.char)
            rune = self._runes.read()
        return self._error("unterminated string", rune.pos)

    def _lex_symbol_string(self, first: _Rune) -> Token:
        joined = self._check_separated(first)
        if joined is not None:
            return joined

        content = [first.char]
        while True:
            rune = self._runes.read()
            if _is_symbol_char(rune.char):
                content.append(rune.char)
            elif rune.char == '/' and self._runes.peek().char != '/':
                content.append(rune.char)
            else:
                break
        self._runes.unread(rune)
        return Token(TokenKind.SYMBOL_STRING, ''.join(content), first.pos)

# ==========================================
# Element Tree
# ==========================================

class Elem:
    """Base of the String, List and Assoc element types."""

    kind = '?'
    pos: LexPos

    def is_string(self) -> Optional['String']:
        return self if isinstance(self, String) else None

    def is_list(self) -> Optional['List']:
        return self if isinstance(self, List) else None

    def is_assoc(self) -> Optional['Assoc']:
        return self if isinstance(self, Assoc) else None

    def expect_string(self) -> 'String':
        """Return self if a String, otherwise raise ElemTypeError."""
        return self._expect(String)

    def expect_list(self) -> 'List':
        """Return self if a List, otherwise raise ElemTypeError."""
        return self._expect(List)

    def expect_assoc(self) -> 'Assoc':
        """Return self if an Assoc, otherwise raise ElemTypeError."""
        return self._expect(Assoc)

    def _expect(self, cls):
        if not isinstance(self, cls):
            raise ElemTypeError(f"expected {cls.kind}, found {self.kind}", self.pos)
        return self


_BOOL_VALUES = {
    '1': True, 't': True, 'T': True, 'TRUE': True, 'true': True, 'True': True,
    '0': False, 'f': False, 'F': False, 'FALSE': False, 'false': False, 'False': False,
}

_SIGNED_RE = re.compile(r'[+-]?[0-9]+')
_UNSIGNED_RE = re.compile(r'[0-9]+')
_FLOAT_RE = re.compile(
    r'[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf(?:inity)?)|nan',
    re.IGNORECASE)
_HEX_FLOAT_RE = re.compile(r'[+-]?0[xX](?:[0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)[pP][+-]?[0-9]+')
_MAC_RE = re.compile(r'[0-9A-Fa-f]{2}([:-])[0-9A-Fa-f]{2}(?:\1[0-9A-Fa-f]{2})*')
_MAC_DOT_RE = re.compile(r'[0-9A-Fa-f]{4}(?:\.[0-9A-Fa-f]{4})+')
_MAC_LENGTHS = (6, 8, 20)


@dataclass
class String(Elem):
    """A string element, escapes already processed.

    The to_* helpers convert the text to typed scalars and raise
    ConversionError carrying the element position on failure.
    """
    value: str
    pos: LexPos = field(default_factory=LexPos)

    kind = 'string'

    def _fail(self, message: str) -> ConversionError:
        return ConversionError(f"{message}: {self.value}", self.pos)

    def to_bool(self) -> bool:
        try:
            return _BOOL_VALUES[self.value]
        except KeyError:
            raise self._fail("invalid boolean") from None

    def _to_int(self, bits: int, signed: bool) -> int:
        pattern = _SIGNED_RE if signed else _UNSIGNED_RE
        if not pattern.fullmatch(self.value):
            raise self._fail("invalid integer")
        try:
            v = int(self.value)
        except ValueError:
            # int() digit limit exceeded
            raise self._fail("integer out of range") from None
        if signed:
            low, high = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
        else:
            low, high = 0, (1 << bits) - 1
        if not low <= v <= high:
            raise self._fail("integer out of range")
        return v

    def to_int32(self) -> int:
        return self._to_int(32, True)

    def to_uint32(self) -> int:
        return self._to_int(32, False)

    def to_int64(self) -> int:
        return self._to_int(64, True)

    def to_uint64(self) -> int:
        return self._to_int(64, False)

    def to_float64(self) -> float:
        """Parse decimal, hexadecimal (0x1p-2), inf or nan notation."""
        if _HEX_FLOAT_RE.fullmatch(self.value):
            try:
                return float.fromhex(self.value)
            except OverflowError:
                raise self._fail("float out of range") from None
        if not _FLOAT_RE.fullmatch(self.value):
            raise self._fail("invalid float")
        v = float(self.value)
        if math.isinf(v) and 'inf' not in self.value.lower():
            raise self._fail("float out of range")
        return v

    def to_float32(self) -> float:
        """Parse as float and round to single precision."""
        v = self.to_float64()
        try:
            f = struct.unpack('f', struct.pack('f', v))[0]
        except OverflowError:
            raise self._fail("float out of range") from None
        if math.isinf(f) and not math.isinf(v):
            raise self._fail("float out of range")
        return f

    def to_ip(self) -> Union[ipaddress.IPv4Address, ipaddress.IPv6Address]:
        try:
            return ipaddress.ip_address(self.value)
        except ValueError:
            raise self._fail("invalid IP address") from None

    def to_cidr(self):
        """Parse CIDR notation, returning the (address, network) pair."""
        prefix = self.value.rpartition('/')[2]
        if '/' not in self.value or not prefix.isdigit():
            raise self._fail("invalid CIDR address")
        try:
            iface = ipaddress.ip_interface(self.value)
        except ValueError:
            raise self._fail("invalid CIDR address") from None
        return iface.ip, iface.network

    def to_mac(self) -> bytes:
        """Parse a 6, 8 or 20 octet hardware address."""
        text = self.value
        if _MAC_RE.fullmatch(text):
            digits = text.replace(':', '').replace('-', '')
        elif _MAC_DOT_RE.fullmatch(text):
            digits = text.replace('.', '')
        else:
            digits = ''
        if len(digits) // 2 not in _MAC_LENGTHS:
            raise self._fail("invalid MAC address")
        return bytes.fromhex(digits)


@dataclass
class List(Elem):
    items: list = field(default_factory=list)
    pos: LexPos = field(default_factory=LexPos)

    kind = 'list'


@dataclass
class Pair:
    key: String
    value: Elem


class Pairs(list):
    """Pairs of an association list. Slicing yields Pairs."""

    def __getitem__(self, index):
        result = super().__getitem__(index)
        if isinstance(index, slice):
            return Pairs(result)
        return result

    def find(self, key: str) -> Optional['Pairs']:
        """Return the pairs starting at the first one with the given key, or None.

        Continue searching with pairs[1:].find(key).
        """
        return self.find_p(lambda pair_key: pair_key == key)

    def find_p(self, pred: Callable[[str], bool]) -> Optional['Pairs']:
        for i, pair in enumerate(self):
            if pred(pair.key.value):
                return self[i:]
        return None


@dataclass
class Assoc(Elem):
    pairs: Pairs = field(default_factory=Pairs)
    pos: LexPos = field(default_factory=LexPos)

    kind = 'assoc'

    def __post_init__(self):
        if not isinstance(self.pairs, Pairs):
            self.pairs = Pairs(self.pairs)

# ==========================================
# Parser
# ==========================================

_EXPECTED_VALUE = "expected string, list or association list"

class _Parser:
    def __init__(self, stream: TextIO):
        self._sink = _ErrorSink()
        self._lexer = _Lexer(stream, self._sink)
        self._next = self._prev = Token(TokenKind.EOF, None, LexPos())

    def error(self, message: str, pos: LexPos):
        self._sink.send(ParseError(message, pos))

    def cause(self) -> Optional[SaftError]:
        return self._sink.cause()

    @property
    def next_pos(self) -> LexPos:
        return self._next.pos

    def consume(self):
        self._prev = self._next
        if self._next.kind is not TokenKind.EOF:
            self._next = self._lexer.read_token()

    def at(self, kind: TokenKind) -> bool:
        return self._next.kind is kind

    def accept(self, kind: TokenKind) -> bool:
        if self._next.kind is not kind:
            return False
        self.consume()
        return True

    def expect(self, kind: TokenKind, message: str) -> bool:
        if self._next.kind is not kind:
            self.error(message, self._next.pos)
            return False
        self.consume()
        return True

    def parse_root(self) -> list:
        self._next = self._lexer.read_token()
        elems = []
        while self._sink.ok():
            if self.accept(TokenKind.SPACE):
                continue
            if self.at(TokenKind.EOF):
                break
            elem = self.parse_value()
            if elem is None:
                self.error(_EXPECTED_VALUE, self._next.pos)
            else:
                elems.append(elem)
        return elems

    def parse_value(self) -> Optional[Elem]:
        """Parse the element starting at the next token, None if there is none."""
        if self._next.kind.is_string:
            return self.parse_string()
        if self.at(TokenKind.LBRACKET):
            return self.parse_list()
        if self.at(TokenKind.LBRACE):
            return self.parse_assoc()
        return None

    def parse_string(self) -> String:
        self.consume()
        return String(self._prev.text, self._prev.pos)

    def parse_list(self) -> List:
        self.consume()
        lst = List([], self._prev.pos)
        while self._sink.ok():
            if self.accept(TokenKind.SPACE):
                continue
            if self.accept(TokenKind.RBRACKET):
                break
            if self.at(TokenKind.EOF):
                self.error("unterminated list", self._next.pos)
                break
            elem = self.parse_value()
            if elem is None:
                self.error(_EXPECTED_VALUE, self._next.pos)
            else:
                lst.items.append(elem)
        return lst

    def parse_assoc(self) -> Assoc:
        self.consume()
        assoc = Assoc(Pairs(), self._prev.pos)
        while self._sink.ok():
            if self.accept(TokenKind.SPACE):
                continue
            if self.accept(TokenKind.RBRACE):
                break
            if self.at(TokenKind.EOF):
                self.error("unterminated association list", self._next.pos)
                break
            pair = self.parse_pair()
            if pair is None:
                break
            assoc.pairs.append(pair)
            if not (self.at(TokenKind.RBRACE) or self.at(TokenKind.EOF)):
                self.expect(TokenKind.SPACE, "association list pairs must be separated by whitespace")
        return assoc

    def parse_pair(self) -> Optional[Pair]:
        if self._next.kind not in _KEY_KINDS:
            self.error("key in association list pair must be of symbol or interpreted string form",
                       self._next.pos)
            return None
        self.consume()
        key = String(self._prev.text, self._prev.pos)

        if not self.accept(TokenKind.COLON):
            self.error("key in association list pair must be immediately followed by colon", key.pos)
            return None

        # whitespace is permitted between the colon and the value
        self.accept(TokenKind.SPACE)

        if self.at(TokenKind.RBRACE) or self.at(TokenKind.EOF):
            self.error("unterminated association list pair", self._next.pos)
            return None
        value = self.parse_value()
        if value is None:
            self.error(_EXPECTED_VALUE, self._next.pos)
            return None
        return Pair(key, value)

# ==========================================
# Public API
# ==========================================

def parse(stream: TextIO) -> list:
    """Parse a SAFT document from a text stream.

    Returns the root elements in document order. The first lexical or
    grammatical error is raised as LexError or ParseError; no elements are
    returned in that case.
    """
    parser = _Parser(stream)
    try:
        elems = parser.parse_root()
    except RecursionError:
        parser.error("nesting too deep", parser.next_pos)
    err = parser.cause()
    if err is not None:
        logger.debug("parse failed: %s", err)
        raise err
    logger.debug("parsed %d root elements", len(elems))
    return elems

def load(fp: TextIO) -> list:
    """Parse SAFT from a file-like object."""
    return parse(fp)

def loads(source: str) -> list:
    """Parse SAFT source string."""
    return parse(io.StringIO(source))

def tokenize(stream: TextIO) -> list:
    """Lex a whole stream into tokens, the final one being EOF.

    Raises LexError on the first lexical error.
    """
    sink = _ErrorSink()
    lexer = _Lexer(stream, sink)
    tokens = []
    while True:
        token = lexer.read_token()
        if not sink.ok():
            raise sink.cause()
        tokens.append(token)
        if token.kind is TokenKind.EOF:
            return tokens

# ==========================================
# Command Line
# ==========================================

def _check_file(name: str) -> int:
    if name == '-':
        return len(load(sys.stdin))
    with open(name, encoding='utf-8') as fp:
        return len(load(fp))

def main(argv=None) -> int:
    """Check SAFT documents and report the first error found in each."""
    parser = argparse.ArgumentParser(
        prog='saft',
        description="Check SAFT documents for syntax errors.",
    )
    parser.add_argument('files', nargs='+', metavar='FILE',
                        help="document to check, '-' reads standard input")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s: %(message)s")

    status = 0
    for name in args.files:
        logger.debug("checking %s", name)
        try:
            count = _check_file(name)
        except SaftError as exc:
            print(f"{name}:{exc}", file=sys.stderr)
            status = 1
        except OSError as exc:
            print(f"{name}: {exc.strerror or exc}", file=sys.stderr)
            status = 1
        else:
            print(f"{name}: ok ({count} elements)")
    return status

if __name__ == '__main__':
    sys.exit(main())
