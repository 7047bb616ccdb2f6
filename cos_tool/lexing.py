"""
Shared tokenizer and recursive descent parser machinery.

Both query dialects are lexed by a table of (regex, token type) pairs tried
in order at the current position, and parsed by hand-written recursive
descent parsers built on BaseParser.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import ClassVar, Dict, List, Optional, Pattern, Tuple

from .errors import GrammarParseError


@dataclass
class Token:
    """Represents a lexical token."""
    type: str
    value: str
    position: int

    @property
    def end(self) -> int:
        return self.position + len(self.value)


class Tokenizer:
    """Tokenizes query strings using the class-level TOKEN_PATTERNS table.

    Subclasses provide TOKEN_PATTERNS; token types listed in SKIP are
    dropped from the output.
    """

    TOKEN_PATTERNS: ClassVar[List[Tuple[str, str]]] = []
    SKIP: ClassVar[Tuple[str, ...]] = ('WHITESPACE', 'COMMENT')

    _compiled: ClassVar[Dict[type, List[Tuple[Pattern, str]]]] = {}

    def __init__(self, query: str):
        """Initialize tokenizer with a query string."""
        self.query = query
        self.position = 0
        self.tokens: List[Token] = []
        self._tokenize()

    @classmethod
    def _patterns(cls) -> List[Tuple[Pattern, str]]:
        compiled = Tokenizer._compiled.get(cls)
        if compiled is None:
            compiled = [(re.compile(pattern), token_type)
                        for pattern, token_type in cls.TOKEN_PATTERNS]
            Tokenizer._compiled[cls] = compiled
        return compiled

    def _tokenize(self) -> None:
        """Tokenize the input query."""
        patterns = self._patterns()
        while self.position < len(self.query):
            for regex, token_type in patterns:
                match = regex.match(self.query, self.position)
                if match and match.end() > self.position:
                    value = match.group(0)
                    if token_type not in self.SKIP:
                        self.tokens.append(Token(token_type, value, self.position))
                    self.position = match.end()
                    break
            else:
                char = self.query[self.position]
                if char in '"\'`':
                    msg = "syntax error: unterminated quoted string"
                else:
                    msg = f"syntax error: unexpected character: {char!r}"
                raise GrammarParseError.at(msg, self.query, self.position)

    def get_tokens(self) -> List[Token]:
        """Return the list of tokens."""
        return self.tokens


class BaseParser:
    """Cursor helpers shared by the dialect parsers."""

    def __init__(self, tokens: List[Token], text: str):
        """Initialize parser with a list of tokens and the source text."""
        self.tokens = tokens
        self.text = text
        self.position = 0

    def _current_token(self) -> Optional[Token]:
        """Get the current token."""
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None

    def _peek_token(self, offset: int = 1) -> Optional[Token]:
        """Peek at a future token."""
        pos = self.position + offset
        if pos < len(self.tokens):
            return self.tokens[pos]
        return None

    def _at(self, *types: str) -> bool:
        token = self._current_token()
        return token is not None and token.type in types

    def _at_keyword(self, *words: str) -> bool:
        token = self._current_token()
        return (token is not None and token.type == 'IDENTIFIER'
                and token.value.lower() in words)

    def _error(self, msg: str, token: Optional[Token] = None) -> GrammarParseError:
        if token is None:
            token = self._current_token()
        position = token.position if token is not None else len(self.text)
        return GrammarParseError.at(msg, self.text, position)

    def _unexpected(self, expected: Optional[str] = None) -> GrammarParseError:
        token = self._current_token()
        found = token.value if token is not None else "end of input"
        msg = f"syntax error: unexpected {found}"
        if expected:
            msg += f", expected {expected}"
        return self._error(msg, token)

    def _consume(self, expected_type: Optional[str] = None,
                 expected: Optional[str] = None) -> Token:
        """Consume and return the current token."""
        token = self._current_token()
        if token is None or (expected_type and token.type != expected_type):
            raise self._unexpected(expected)
        self.position += 1
        return token

    def _consume_keyword(self, word: str) -> Token:
        if not self._at_keyword(word):
            raise self._unexpected(word)
        return self._consume()

    def _expect_end(self) -> None:
        if self._current_token() is not None:
            raise self._unexpected()

    def _check_regex(self, pattern: str, token: Token) -> None:
        try:
            re.compile(pattern)
        except re.error as e:
            raise self._error(f"error parsing regexp: {e}", token)


_SIMPLE_ESCAPES = {
    'a': '\a', 'b': '\b', 'f': '\f', 'n': '\n', 'r': '\r',
    't': '\t', 'v': '\v', '\\': '\\', '"': '"', "'": "'",
}

_QUOTE_ESCAPES = {
    '\a': '\\a', '\b': '\\b', '\f': '\\f', '\n': '\\n', '\r': '\\r',
    '\t': '\\t', '\v': '\\v', '\\': '\\\\', '"': '\\"',
}


def unquote(literal: str) -> str:
    """Decode a quoted string literal with Go escape semantics.

    Backtick strings are raw; double and single quoted strings support the
    usual backslash escapes including ``\\x``, octal, ``\\u`` and ``\\U``.

    Raises:
        ValueError: On an invalid escape sequence
    """
    quote_char = literal[0]
    body = literal[1:-1]
    if quote_char == '`':
        return body

    out = []
    i = 0
    while i < len(body):
        char = body[i]
        if char != '\\':
            out.append(char)
            i += 1
            continue
        if i + 1 >= len(body):
            raise ValueError("invalid escape sequence at end of string")
        code = body[i + 1]
        if code in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[code])
            i += 2
        elif code in 'xuU':
            width = {'x': 2, 'u': 4, 'U': 8}[code]
            digits = body[i + 2:i + 2 + width]
            if len(digits) != width or not re.fullmatch(r'[0-9a-fA-F]+', digits):
                raise ValueError(f"invalid escape sequence: \\{code}{digits}")
            out.append(chr(int(digits, 16)))
            i += 2 + width
        elif code in '01234567':
            digits = body[i + 1:i + 4]
            if not re.fullmatch(r'[0-7]{3}', digits):
                raise ValueError(f"invalid escape sequence: \\{digits}")
            out.append(chr(int(digits, 8)))
            i += 4
        else:
            raise ValueError(f"unknown escape sequence: \\{code}")
    return ''.join(out)


def quote(value: str) -> str:
    """Render ``value`` as a double quoted literal, like Go's ``%q``."""
    out = ['"']
    for char in value:
        if char in _QUOTE_ESCAPES:
            out.append(_QUOTE_ESCAPES[char])
        elif char.isprintable():
            out.append(char)
        else:
            code = ord(char)
            if code < 0x80:
                out.append(f"\\x{code:02x}")
            elif code < 0x10000:
                out.append(f"\\u{code:04x}")
            else:
                out.append(f"\\U{code:08x}")
    out.append('"')
    return ''.join(out)


def format_number(value: float) -> str:
    """Render a float the way Go's ``%v`` does (``1``, ``0.5``, ``1e+30``, ``+Inf``).

    Shortest round-trip digits, in exponent form when the decimal exponent
    is below -4 or at least 21.
    """
    if value != value:
        return "NaN"
    if value in (float('inf'), float('-inf')):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e21:
        return str(int(value))
    text = repr(value)
    mantissa, _, exponent = text.partition('e')
    if not exponent:
        return text
    power = int(exponent)
    if -4 <= power < 21:
        return format(Decimal(text), 'f')
    sign = '-' if power < 0 else '+'
    return f"{mantissa}e{sign}{abs(power):02d}"
