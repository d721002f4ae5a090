"""Erlang term helpers.

This module covers the slice of Erlang term syntax the escript build needs:

- Parsing ``.app`` resource files and ``.config`` term files.
- Rendering Python values back into Erlang literal source for the launcher.

Values map onto Python types as follows: atoms are :class:`Atom`, strings
(charlists) are ``str``, binaries are ``bytes``, tuples are ``tuple``, lists are
``list`` and maps are ``dict``.
"""

from dataclasses import dataclass
import re


class TermParseError(ValueError):
    """Raised when Erlang term text cannot be parsed."""


class Atom(str):
    """An Erlang atom.

    Atoms compare and hash like their names but render as atoms, never as
    strings.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        return f"Atom({str.__repr__(self)})"


@dataclass(frozen=True, slots=True)
class _Token:
    """A lexical token.

    :ivar kind: Token kind (``atom``, ``string``, ``int``, ``punct`` ...).
    :ivar value: Decoded token value.
    :ivar line: 1-based source line.
    """

    kind: str
    value: object
    line: int


_TOKEN_RE: re.Pattern[str] = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<comment>%[^\n]*)
    |(?P<float>-?\d+\.\d+(?:[eE][+-]?\d+)?)
    |(?P<based>-?\d+\#[0-9a-zA-Z]+)
    |(?P<int>-?\d+)
    |(?P<char>\$(?:\\(?:x\{[0-9a-fA-F]+\}|[0-7]{1,3}|.)|.))
    |(?P<string>"(?:[^"\\]|\\.)*")
    |(?P<qatom>'(?:[^'\\]|\\.)*')
    |(?P<atom>[a-z][a-zA-Z0-9_@]*)
    |(?P<var>[A-Z_][a-zA-Z0-9_@]*)
    |(?P<punct><<|>>|=>|\#\{|[{}\[\],|/]|\.(?=\s|%|$))
    """,
    re.VERBOSE | re.DOTALL,
)

_ESCAPES: dict[str, str] = {
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "s": " ",
    "e": "\x1b",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "d": "\x7f",
}

_ESCAPE_RE: re.Pattern[str] = re.compile(r"\\(x\{[0-9a-fA-F]+\}|x[0-9a-fA-F]{2}|[0-7]{1,3}|\^[a-zA-Z]|.)", re.DOTALL)

_BARE_ATOM_RE: re.Pattern[str] = re.compile(r"^[a-z][a-zA-Z0-9_@]*$")

_RESERVED_WORDS: frozenset[str] = frozenset(
    {
        "after",
        "and",
        "andalso",
        "band",
        "begin",
        "bnot",
        "bor",
        "bsl",
        "bsr",
        "bxor",
        "case",
        "catch",
        "cond",
        "div",
        "else",
        "end",
        "fun",
        "if",
        "let",
        "maybe",
        "not",
        "of",
        "or",
        "orelse",
        "receive",
        "rem",
        "try",
        "when",
        "xor",
    }
)


def _unescape(body: str) -> str:
    """Decode Erlang escape sequences inside a quoted string or atom.

    :param body: Text between the quotes.
    :returns: Decoded text.
    """

    def repl(m: re.Match[str]) -> str:
        seq: str = m.group(1)
        if seq.startswith("x{") is True:
            return chr(int(seq[2:-1], 16))
        if seq.startswith("x") is True and len(seq) == 3:
            return chr(int(seq[1:], 16))
        if seq[0] in "01234567":
            return chr(int(seq, 8))
        if seq.startswith("^") is True:
            return chr(ord(seq[1].upper()) - 64)
        return _ESCAPES.get(seq, seq)

    return _ESCAPE_RE.sub(repl, body)


def _tokenize(text: str) -> list[_Token]:
    """Split Erlang term text into tokens.

    :param text: Source text.
    :returns: Token list (whitespace and comments dropped).
    :raises TermParseError: On an unexpected character.
    """

    tokens: list[_Token] = []
    pos: int = 0
    line: int = 1
    n: int = len(text)
    while pos < n:
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise TermParseError(f"line {line}: unexpected character {text[pos]!r}")

        kind: str = m.lastgroup or ""
        raw: str = m.group(0)
        if kind == "float":
            tokens.append(_Token("float", float(raw), line))
        elif kind == "based":
            base_s, digits = raw.lstrip("-").split("#", 1)
            value: int = int(digits, int(base_s))
            tokens.append(_Token("int", -value if raw.startswith("-") else value, line))
        elif kind == "int":
            tokens.append(_Token("int", int(raw), line))
        elif kind == "char":
            tokens.append(_Token("int", ord(_unescape(raw[1:])), line))
        elif kind == "string":
            tokens.append(_Token("string", _unescape(raw[1:-1]), line))
        elif kind == "qatom":
            tokens.append(_Token("atom", Atom(_unescape(raw[1:-1])), line))
        elif kind == "atom":
            tokens.append(_Token("atom", Atom(raw), line))
        elif kind == "var":
            raise TermParseError(f"line {line}: variables are not allowed in terms ({raw})")
        elif kind == "punct":
            tokens.append(_Token("punct", raw, line))

        line += raw.count("\n")
        pos = m.end()

    return tokens


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: list[_Token]) -> None:
        self._tokens: list[_Token] = tokens
        self._pos: int = 0

    def at_end(self) -> bool:
        return self._pos >= len(self._tokens)

    def _peek(self) -> _Token | None:
        if self._pos >= len(self._tokens):
            return None
        return self._tokens[self._pos]

    def _next(self) -> _Token:
        tok: _Token | None = self._peek()
        if tok is None:
            last_line: int = self._tokens[-1].line if len(self._tokens) > 0 else 1
            raise TermParseError(f"line {last_line}: unexpected end of input")
        self._pos += 1
        return tok

    def _is_punct(self, value: str) -> bool:
        tok: _Token | None = self._peek()
        return tok is not None and tok.kind == "punct" and tok.value == value

    def expect(self, value: str) -> None:
        tok: _Token = self._next()
        if tok.kind != "punct" or tok.value != value:
            raise TermParseError(f"line {tok.line}: expected {value!r}, got {tok.value!r}")

    def skip_dot(self) -> bool:
        if self._is_punct(".") is True:
            self._pos += 1
            return True
        return False

    def term(self) -> object:
        tok: _Token = self._next()
        if tok.kind in ("atom", "string", "int", "float"):
            return tok.value
        if tok.kind == "punct":
            if tok.value == "{":
                return tuple(self._sequence("}"))
            if tok.value == "[":
                return self._list()
            if tok.value == "<<":
                return self._binary()
            if tok.value == "#{":
                return self._map()
        raise TermParseError(f"line {tok.line}: unexpected token {tok.value!r}")

    def _sequence(self, close: str) -> list[object]:
        items: list[object] = []
        if self._is_punct(close) is True:
            self._pos += 1
            return items
        while True:
            items.append(self.term())
            if self._is_punct(",") is True:
                self._pos += 1
                continue
            self.expect(close)
            return items

    def _list(self) -> list[object]:
        items: list[object] = []
        if self._is_punct("]") is True:
            self._pos += 1
            return items
        while True:
            items.append(self.term())
            if self._is_punct(",") is True:
                self._pos += 1
                continue
            if self._is_punct("|") is True:
                self._pos += 1
                tail: object = self.term()
                if not isinstance(tail, list):
                    raise TermParseError("improper lists are not supported")
                items.extend(tail)
            self.expect("]")
            return items

    def _binary(self) -> bytes:
        out: bytearray = bytearray()
        if self._is_punct(">>") is True:
            self._pos += 1
            return bytes(out)
        while True:
            tok: _Token = self._next()
            if tok.kind == "string":
                text: str = str(tok.value)
                if self._is_punct("/") is True:
                    self._pos += 1
                    self._next()
                    out.extend(text.encode("utf-8"))
                else:
                    out.extend(text.encode("latin-1"))
            elif tok.kind == "int":
                out.append(int(tok.value) & 0xFF)  # type: ignore[arg-type]
            else:
                raise TermParseError(f"line {tok.line}: unsupported binary segment {tok.value!r}")
            if self._is_punct(",") is True:
                self._pos += 1
                continue
            self.expect(">>")
            return bytes(out)

    def _map(self) -> dict[object, object]:
        out: dict[object, object] = {}
        if self._is_punct("}") is True:
            self._pos += 1
            return out
        while True:
            key: object = self.term()
            self.expect("=>")
            out[key] = self.term()
            if self._is_punct(",") is True:
                self._pos += 1
                continue
            self.expect("}")
            return out


def parse_terms(text: str) -> list[object]:
    """Parse a sequence of dot-terminated terms (``file:consult/1`` style).

    :param text: Source text.
    :returns: Parsed terms in order.
    :raises TermParseError: If the text is not a valid term sequence.
    """

    parser: _Parser = _Parser(_tokenize(text))
    terms: list[object] = []
    while parser.at_end() is False:
        terms.append(parser.term())
        parser.expect(".")
    return terms


def parse_term(text: str) -> object:
    """Parse exactly one term. The trailing dot is optional.

    :param text: Source text.
    :returns: Parsed term.
    :raises TermParseError: If the text does not hold exactly one term.
    """

    parser: _Parser = _Parser(_tokenize(text))
    value: object = parser.term()
    parser.skip_dot()
    if parser.at_end() is False:
        raise TermParseError("trailing data after term")
    return value


def render_atom(name: str) -> str:
    """Render an atom, quoting it when it is not a valid bare atom.

    :param name: Atom text.
    :returns: Erlang source for the atom.
    """

    if _BARE_ATOM_RE.match(name) is not None and name not in _RESERVED_WORDS:
        return name
    return "'" + _escape(name, quote="'") + "'"


def _escape(text: str, *, quote: str) -> str:
    out: list[str] = []
    for ch in text:
        if ch == "\\":
            out.append("\\\\")
        elif ch == quote:
            out.append("\\" + quote)
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\r":
            out.append("\\r")
        elif ch == "\t":
            out.append("\\t")
        elif ord(ch) < 0x20 or ord(ch) == 0x7F:
            out.append(f"\\x{{{ord(ch):X}}}")
        else:
            out.append(ch)
    return "".join(out)


def render_binary(data: bytes) -> str:
    """Render a binary literal.

    UTF-8 text is rendered as ``<<"..."/utf8>>``; anything else byte by byte.

    :param data: Binary contents.
    :returns: Erlang source for the binary.
    """

    if len(data) == 0:
        return "<<>>"
    try:
        text: str = data.decode("utf-8")
    except UnicodeDecodeError:
        return "<<" + ",".join(str(b) for b in data) + ">>"
    return '<<"' + _escape(text, quote='"') + '"/utf8>>'


def _render_float(value: float) -> str:
    if value != value or value in (float("inf"), float("-inf")):
        raise ValueError(f"Cannot render non-finite float {value!r} as an Erlang term.")
    text: str = repr(value)
    mantissa, sep, exponent = text.partition("e")
    if "." not in mantissa:
        mantissa += ".0"
    if sep == "":
        return mantissa
    return f"{mantissa}e{int(exponent)}"


def render_term(value: object) -> str:
    """Render a Python value as Erlang literal source.

    :param value: Value built from the types listed in the module docstring.
    :returns: Erlang source text.
    :raises ValueError: If the value has no Erlang literal form.
    """

    if isinstance(value, Atom):
        return render_atom(value)
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value is True else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _render_float(value)
    if isinstance(value, str):
        return '"' + _escape(value, quote='"') + '"'
    if isinstance(value, (bytes, bytearray)):
        return render_binary(bytes(value))
    if isinstance(value, tuple):
        return "{" + ", ".join(render_term(v) for v in value) + "}"
    if isinstance(value, list):
        return "[" + ", ".join(render_term(v) for v in value) + "]"
    if isinstance(value, dict):
        pairs: list[str] = [f"{render_term(k)} => {render_term(v)}" for k, v in value.items()]
        return "#{" + ", ".join(pairs) + "}"
    raise ValueError(f"Cannot render {type(value).__name__} as an Erlang term.")


def module_atom(name: str, language: str) -> Atom:
    """Map a user-facing module name to the atom the runtime loads.

    Elixir aliases gain the ``Elixir.`` prefix; a leading ``:`` marks a plain
    Erlang module in either language.

    :param name: Module name such as ``MyApp.CLI`` or ``my_cli``.
    :param language: ``elixir`` or ``erlang``.
    :returns: Module atom.
    """

    if name.startswith(":") is True:
        return Atom(name[1:])
    if language == "elixir" and name.startswith("Elixir.") is False:
        return Atom(f"Elixir.{name}")
    return Atom(name)
