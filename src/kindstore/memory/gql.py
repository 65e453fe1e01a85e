"""
A parser for the subset of GQL understood by the in-memory backend.

    SELECT * FROM `Book`
        WHERE author = @a AND year >= 1960 AND __key__ HAS ANCESTOR @k
        ORDER BY year DESC, title
        LIMIT 10 OFFSET @startCursor + 5

Supported: SELECT *; a bare or backtick-quoted kind; conditions joined by
AND using =, !=, <, <=, >, >=, IN and IS NULL, plus __key__ HAS ANCESTOR;
ORDER BY with ASC/DESC; LIMIT and OFFSET taking literals or parameters.
Literals are quoted strings, integers, floats, TRUE, FALSE, NULL,
KEY(Kind, id_or_name, ...) and ARRAY(value, ...).
"""

from __future__ import annotations

import re
from typing import Any, List, Optional, Tuple
from dataclasses import dataclass, field

from ..errors import BackendError
from ..protocols import Key

_TOKEN_RE = re.compile(
    r"""\s*(?:
      (?P<quoted>`(?:[^`]|``)*`)
    | (?P<string>'(?:[^'\\]|\\.|'')*'|"(?:[^"\\]|\\.|"")*")
    | (?P<param>@[A-Za-z0-9_]+)
    | (?P<number>-?\d+(?:\.\d*)?(?:[eE][-+]?\d+)?)
    | (?P<op><=|>=|!=|=|<|>|\(|\)|,|\*|\+)
    | (?P<name>[A-Za-z_][A-Za-z0-9_.]*)
    )""",
    re.VERBOSE,
)

COMPARISON_OPS = ("=", "!=", "<", "<=", ">", ">=")


@dataclass(frozen=True)
class Param:
    """A named parameter reference, @name."""

    name: str


@dataclass
class Condition:
    """A property comparison. op is a comparison operator or "IN"."""

    prop: str
    op: str
    value: Any


@dataclass
class GqlQuery:
    kind: str
    conditions: List[Condition] = field(default_factory=list)
    ancestor: Any = None
    # (property, descending)
    orders: List[Tuple[str, bool]] = field(default_factory=list)
    limit: Any = None
    offset: Any = None
    # Extra count added to a cursor offset: OFFSET @cursor + n
    offset_plus: Any = None


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise BackendError(f"GQL syntax error at position {pos}: {text[pos:pos + 20]!r}")
        kind = m.lastgroup
        assert kind is not None
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


def _unquote(token: str) -> str:
    quote = token[0]
    body = token[1:-1]
    body = body.replace(quote * 2, quote)
    return re.sub(r"\\(.)", r"\1", body) if quote != "`" else body


class _Parser:
    def __init__(self, text: str) -> None:
        self._tokens = _tokenize(text)
        self._pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _next(self) -> Tuple[str, str]:
        token = self._peek()
        if token is None:
            raise BackendError("Unexpected end of GQL query")
        self._pos += 1
        return token

    def _at_keyword(self, *words: str) -> bool:
        """True if the next tokens are the given (case-insensitive) keywords."""
        for ix, word in enumerate(words):
            if self._pos + ix >= len(self._tokens):
                return False
            kind, text = self._tokens[self._pos + ix]
            if kind != "name" or text.upper() != word:
                return False
        return True

    def _accept_keyword(self, *words: str) -> bool:
        if self._at_keyword(*words):
            self._pos += len(words)
            return True
        return False

    def _expect_keyword(self, *words: str) -> None:
        if not self._accept_keyword(*words):
            raise BackendError(f"Expected {' '.join(words)} in GQL query")

    def _accept_op(self, op: str) -> bool:
        token = self._peek()
        if token is not None and token == ("op", op):
            self._pos += 1
            return True
        return False

    def _expect_op(self, op: str) -> None:
        if not self._accept_op(op):
            raise BackendError(f"Expected '{op}' in GQL query")

    def _identifier(self) -> str:
        kind, text = self._next()
        if kind == "quoted":
            return _unquote(text)
        if kind == "name":
            return text
        raise BackendError(f"Expected a name in GQL query, got {text!r}")

    def parse(self) -> GqlQuery:
        self._expect_keyword("SELECT")
        if not self._accept_op("*"):
            raise BackendError("Only SELECT * queries are supported")
        self._expect_keyword("FROM")
        query = GqlQuery(kind=self._identifier())
        if self._accept_keyword("WHERE"):
            self._parse_condition(query)
            while self._accept_keyword("AND"):
                self._parse_condition(query)
        if self._accept_keyword("ORDER", "BY"):
            while True:
                prop = self._identifier()
                descending = False
                if self._accept_keyword("DESC"):
                    descending = True
                else:
                    self._accept_keyword("ASC")
                query.orders.append((prop, descending))
                if not self._accept_op(","):
                    break
        if self._accept_keyword("LIMIT"):
            query.limit = self._operand()
        if self._accept_keyword("OFFSET"):
            query.offset = self._operand()
            if self._accept_op("+"):
                query.offset_plus = self._operand()
        token = self._peek()
        if token is not None:
            raise BackendError(f"Unexpected {token[1]!r} in GQL query")
        return query

    def _parse_condition(self, query: GqlQuery) -> None:
        prop = self._identifier()
        if prop == "__key__" and self._accept_keyword("HAS", "ANCESTOR"):
            query.ancestor = self._operand()
            return
        if self._accept_keyword("IS", "NULL"):
            query.conditions.append(Condition(prop, "=", None))
            return
        if self._accept_keyword("IN"):
            query.conditions.append(Condition(prop, "IN", self._operand()))
            return
        kind, text = self._next()
        if kind != "op" or text not in COMPARISON_OPS:
            raise BackendError(f"Expected a comparison operator in GQL query, got {text!r}")
        query.conditions.append(Condition(prop, text, self._operand()))

    def _operand(self) -> Any:
        kind, text = self._next()
        if kind == "param":
            return Param(text[1:])
        if kind == "string":
            return _unquote(text)
        if kind == "number":
            if re.fullmatch(r"-?\d+", text):
                return int(text)
            return float(text)
        if kind == "name":
            word = text.upper()
            if word == "TRUE":
                return True
            if word == "FALSE":
                return False
            if word == "NULL":
                return None
            if word == "KEY":
                return Key.from_path(*self._arguments())
            if word == "ARRAY":
                return self._arguments()
        raise BackendError(f"Unexpected {text!r} in GQL query")

    def _arguments(self) -> List[Any]:
        self._expect_op("(")
        args: List[Any] = []
        if not self._accept_op(")"):
            while True:
                token = self._peek()
                # Kinds inside KEY() may be bare names
                if token is not None and token[0] in ("name", "quoted") and not self._is_literal_word(token[1]):
                    args.append(self._identifier())
                else:
                    args.append(self._operand())
                if self._accept_op(")"):
                    break
                self._expect_op(",")
        return args

    @staticmethod
    def _is_literal_word(word: str) -> bool:
        return word.upper() in ("TRUE", "FALSE", "NULL", "KEY", "ARRAY")


def parse_gql(text: str) -> GqlQuery:
    """Parse a GQL query.

    Raises:
        BackendError: for syntax outside the supported subset.
    """
    return _Parser(text).parse()
