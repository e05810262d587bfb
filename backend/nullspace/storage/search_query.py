"""Query language for the note index.

Syntax (Lucene style)::

    ocean tides             either term (juxtaposition is OR)
    ocean AND tides         both terms
    +ocean -draft           ocean required, draft excluded
    NOT draft               same as -draft
    "high tide"             phrase
    tid*                    prefix
    title:ocean             field restricted: title, content or tags
    tags:(work OR home)     field applied to a group
    (a OR b) AND c          grouping; AND binds tighter than OR

``parse()`` returns a small tree of frozen dataclasses; evaluation lives in
``search_index``. Malformed input raises ``QueryParseError`` with the
offending position and fragment.
"""
from __future__ import annotations

from dataclasses import dataclass, field as dc_field
from enum import Enum
from typing import Optional, Union

from nullspace.errors import QueryParseError

FIELDS = ("title", "content", "tags")
KEYWORDS = ("AND", "OR", "NOT")
_SPECIAL = '()":'
MAX_DEPTH = 64


class Occur(str, Enum):
    SHOULD = "should"
    MUST = "must"
    MUST_NOT = "must_not"


@dataclass(frozen=True)
class TermQuery:
    text: str
    field: Optional[str] = None
    prefix: bool = False
    # offset in the source query, for error reporting
    pos: int = dc_field(default=0, compare=False)


@dataclass(frozen=True)
class PhraseQuery:
    text: str
    field: Optional[str] = None
    pos: int = dc_field(default=0, compare=False)


@dataclass(frozen=True)
class Clause:
    occur: Occur
    query: "Query"


@dataclass(frozen=True)
class BooleanQuery:
    clauses: tuple[Clause, ...]


Query = Union[TermQuery, PhraseQuery, BooleanQuery]


@dataclass(frozen=True)
class _Token:
    kind: str  # word, phrase, field, lparen, rparen, plus, minus, and, or, not
    text: str
    pos: int


def _tokenize(query: str) -> list[_Token]:
    tokens: list[_Token] = []
    i, n = 0, len(query)
    while i < n:
        ch = query[i]
        if ch.isspace():
            i += 1
        elif ch == "(":
            tokens.append(_Token("lparen", ch, i))
            i += 1
        elif ch == ")":
            tokens.append(_Token("rparen", ch, i))
            i += 1
        elif ch == "+":
            tokens.append(_Token("plus", ch, i))
            i += 1
        elif ch == "-":
            tokens.append(_Token("minus", ch, i))
            i += 1
        elif ch == ":":
            raise QueryParseError("Field separator without a field name", i, ch)
        elif ch == '"':
            end = query.find('"', i + 1)
            if end < 0:
                raise QueryParseError("Unterminated phrase", i, query[i:])
            tokens.append(_Token("phrase", query[i + 1 : end], i))
            i = end + 1
        else:
            start = i
            while i < n and not query[i].isspace() and query[i] not in _SPECIAL:
                i += 1
            word = query[start:i]
            if i < n and query[i] == ":":
                tokens.append(_Token("field", word, start))
                i += 1
            elif word in KEYWORDS:
                tokens.append(_Token(word.lower(), word, start))
            else:
                tokens.append(_Token("word", word, start))
    return tokens


class _Parser:
    def __init__(self, query: str):
        self.query = query
        self.tokens = _tokenize(query)
        self.i = 0
        self.depth = 0

    def peek(self) -> Optional[_Token]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def take(self) -> _Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def error(self, message: str, tok: Optional[_Token]) -> QueryParseError:
        if tok is None:
            return QueryParseError(message, len(self.query), "")
        return QueryParseError(message, tok.pos, self.query[tok.pos : tok.pos + max(len(tok.text), 1)])

    def parse(self) -> Optional[Query]:
        if not self.tokens:
            return None
        node = self.parse_or(field=None)
        tok = self.peek()
        if tok is not None:
            if tok.kind == "rparen":
                raise self.error("Unbalanced closing parenthesis", tok)
            raise self.error("Unexpected token", tok)
        return node

    def _starts_operand(self, tok: Optional[_Token]) -> bool:
        return tok is not None and tok.kind in ("word", "phrase", "field", "lparen", "plus", "minus", "not")

    def parse_or(self, field: Optional[str]) -> Query:
        items = [self.parse_and(field)]
        while True:
            tok = self.peek()
            if tok is not None and tok.kind == "or":
                self.take()
                if not self._starts_operand(self.peek()):
                    raise self.error("Dangling OR", tok)
                items.append(self.parse_and(field))
            elif self._starts_operand(tok):
                items.append(self.parse_and(field))
            else:
                break
        if len(items) == 1 and items[0][0] is None:
            return items[0][1]
        return BooleanQuery(tuple(Clause(occur or Occur.SHOULD, q) for occur, q in items))

    def parse_and(self, field: Optional[str]) -> tuple[Optional[Occur], Query]:
        items = [self.parse_unary(field)]
        while True:
            tok = self.peek()
            if tok is None or tok.kind != "and":
                break
            self.take()
            if not self._starts_operand(self.peek()):
                raise self.error("Dangling AND", tok)
            items.append(self.parse_unary(field))
        if len(items) == 1:
            return items[0]
        return None, BooleanQuery(tuple(Clause(occur or Occur.MUST, q) for occur, q in items))

    def parse_unary(self, field: Optional[str]) -> tuple[Optional[Occur], Query]:
        tok = self.peek()
        if tok is not None and tok.kind in ("plus", "minus", "not"):
            self.take()
            occur = Occur.MUST if tok.kind == "plus" else Occur.MUST_NOT
            nxt = self.peek()
            if nxt is None or nxt.kind not in ("word", "phrase", "field", "lparen"):
                raise self.error(f"Operator {tok.text!r} needs an operand", tok)
            return occur, self.parse_primary(field)
        return None, self.parse_primary(field)

    def parse_primary(self, field: Optional[str]) -> Query:
        tok = self.peek()
        if tok is None:
            raise self.error("Unexpected end of query", None)
        if tok.kind == "lparen":
            self.take()
            if self.peek() is not None and self.peek().kind == "rparen":
                raise self.error("Empty group", tok)
            if self.depth >= MAX_DEPTH:
                raise self.error(f"Groups nested deeper than {MAX_DEPTH} levels", tok)
            self.depth += 1
            node = self.parse_or(field)
            self.depth -= 1
            close = self.peek()
            if close is None or close.kind != "rparen":
                raise self.error("Unbalanced opening parenthesis", tok)
            self.take()
            return node
        if tok.kind == "field":
            self.take()
            name = tok.text
            if name not in FIELDS:
                raise self.error(f"Unknown field {name!r}", tok)
            if field is not None and field != name:
                raise self.error("Nested field prefixes", tok)
            nxt = self.peek()
            if nxt is None or nxt.kind not in ("word", "phrase", "lparen"):
                raise self.error(f"Field {name!r} needs a value", tok)
            return self.parse_primary(name)
        if tok.kind == "phrase":
            self.take()
            if not tok.text.strip():
                raise self.error("Empty phrase", tok)
            return PhraseQuery(tok.text, field, pos=tok.pos)
        if tok.kind == "word":
            self.take()
            text, prefix = tok.text, False
            if text.endswith("*"):
                text, prefix = text.rstrip("*"), True
                if not text:
                    raise self.error("Prefix wildcard needs at least one character", tok)
            return TermQuery(text, field, prefix, pos=tok.pos)
        raise self.error("Unexpected token", tok)


def parse(query: str) -> Optional[Query]:
    """Parse ``query``; returns None for a blank query."""
    if not isinstance(query, str):
        raise TypeError("query must be a string")
    return _Parser(query).parse()
