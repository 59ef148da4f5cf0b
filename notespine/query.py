"""
NoteSpine Query Engine
======================

Boolean term/tag queries over the inverted index.

Expressions are small trees of Term, Tag, And and Or nodes. They can be
built directly, parsed from text, or read from a JSON-style dict:

    parse_query("channels AND (tag:go OR tag:python)")
    expr_from_dict({"and": [{"term": "channels"}, {"tag": "go"}]})

Evaluation fetches the posting list of every leaf, intersects (AND) or
unions (OR) them with linear merges over sorted ids, drops ids that are
stale in the index or tombstoned in the store, and orders the rest by
created_at descending. Relevance ranking uses BM25 over the matched bodies.

Usage:
    engine = QueryEngine(store, index_ref)
    hits = engine.search("tag:python AND generators", limit=10)
"""

import re
import time
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from rank_bm25 import BM25Plus

from .errors import QueryCancelled, QuerySyntaxError
from .inverted_index import IndexRef, InvertedIndex, normalize_tag, tokenize
from .record_store import RecordStore

logger = logging.getLogger(__name__)

RANK_RECENCY = "recency"
RANK_RELEVANCE = "relevance"
RANK_MODES = (RANK_RECENCY, RANK_RELEVANCE)


# -------------------------------------------------------------------------------
# EXPRESSIONS
# -------------------------------------------------------------------------------

@dataclass(frozen=True)
class Term:
    """Body term predicate. Text that tokenizes to several tokens matches all of them."""
    text: str

    @property
    def tokens(self) -> List[str]:
        return tokenize(self.text)


@dataclass(frozen=True)
class Tag:
    """Tag predicate."""
    name: str


@dataclass(frozen=True)
class And:
    children: Tuple["Expr", ...]


@dataclass(frozen=True)
class Or:
    children: Tuple["Expr", ...]


Expr = Union[Term, Tag, And, Or]
QueryInput = Union[Expr, str, Dict[str, Any], None]


def term_tokens(expr: Optional[Expr]) -> List[str]:
    """All body tokens named by the Term leaves of an expression."""
    if expr is None:
        return []
    if isinstance(expr, Term):
        return expr.tokens
    if isinstance(expr, (And, Or)):
        tokens: List[str] = []
        for child in expr.children:
            tokens.extend(term_tokens(child))
        return tokens
    return []


# -------------------------------------------------------------------------------
# PARSING
# -------------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"\(|\)|[^\s()]+")
_AND = "AND"
_OR = "OR"


class _Parser:
    """
    Recursive-descent parser.

        or_expr  := and_expr ("OR" and_expr)*
        and_expr := primary (["AND"] primary)*
        primary  := "(" or_expr ")" | "tag:" NAME | WORD
    """

    def __init__(self, text: str):
        self.tokens = _TOKEN_RE.findall(text)
        self.pos = 0

    def peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> str:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def parse(self) -> Optional[Expr]:
        if not self.tokens:
            return None
        expr = self.or_expr()
        if self.peek() is not None:
            raise QuerySyntaxError(f"unexpected {self.peek()!r} at position {self.pos}")
        return expr

    def or_expr(self) -> Expr:
        children = [self.and_expr()]
        while self.peek() == _OR:
            self.take()
            children.append(self.and_expr())
        return children[0] if len(children) == 1 else Or(tuple(children))

    def and_expr(self) -> Expr:
        children = [self.primary()]
        while True:
            token = self.peek()
            if token == _AND:
                self.take()
                children.append(self.primary())
            elif token is not None and token not in (_OR, ")"):
                children.append(self.primary())
            else:
                break
        return children[0] if len(children) == 1 else And(tuple(children))

    def primary(self) -> Expr:
        token = self.peek()
        if token is None:
            raise QuerySyntaxError("query ends where a term was expected")
        if token in (_AND, _OR, ")"):
            raise QuerySyntaxError(f"unexpected {token!r} at position {self.pos}")

        self.take()
        if token == "(":
            expr = self.or_expr()
            if self.peek() != ")":
                raise QuerySyntaxError("missing closing parenthesis")
            self.take()
            return expr

        if token.lower().startswith("tag:"):
            name = token[4:]
            if not normalize_tag(name):
                raise QuerySyntaxError("empty tag name")
            return Tag(name)
        return Term(token)


def parse_query(text: str) -> Optional[Expr]:
    """Parse query text. Returns None for an empty query."""
    return _Parser(text).parse()


def expr_from_dict(data: Any) -> Optional[Expr]:
    """Build an expression from {"term"|"tag"|"and"|"or": ...} dicts."""
    if data is None:
        return None
    if not isinstance(data, dict) or len(data) != 1:
        raise QuerySyntaxError(f"expected a single-key dict, got {data!r}")

    (key, value), = data.items()
    if key == "term":
        if not isinstance(value, str):
            raise QuerySyntaxError("term must be a string")
        return Term(value)
    if key == "tag":
        if not isinstance(value, str) or not normalize_tag(value):
            raise QuerySyntaxError("tag must be a non-empty string")
        return Tag(value)
    if key in ("and", "or"):
        if not isinstance(value, list):
            raise QuerySyntaxError(f"{key} expects a list")
        children = tuple(expr_from_dict(child) for child in value)
        return And(children) if key == "and" else Or(children)
    raise QuerySyntaxError(f"unknown query operator {key!r}")


def to_expr(query: QueryInput) -> Optional[Expr]:
    if query is None or isinstance(query, (Term, Tag, And, Or)):
        return query
    if isinstance(query, str):
        return parse_query(query)
    if isinstance(query, dict):
        return expr_from_dict(query)
    raise QuerySyntaxError(f"unsupported query type {type(query).__name__}")


# -------------------------------------------------------------------------------
# MERGES
# -------------------------------------------------------------------------------

def intersect_sorted(left: Sequence[int], right: Sequence[int]) -> List[int]:
    """Two-pointer intersection of ascending id lists."""
    result = []
    i = j = 0
    while i < len(left) and j < len(right):
        a, b = left[i], right[j]
        if a == b:
            result.append(a)
            i += 1
            j += 1
        elif a < b:
            i += 1
        else:
            j += 1
    return result


def union_sorted(left: Sequence[int], right: Sequence[int]) -> List[int]:
    """Two-pointer union of ascending id lists."""
    result = []
    i = j = 0
    while i < len(left) and j < len(right):
        a, b = left[i], right[j]
        if a == b:
            result.append(a)
            i += 1
            j += 1
        elif a < b:
            result.append(a)
            i += 1
        else:
            result.append(b)
            j += 1
    result.extend(left[i:])
    result.extend(right[j:])
    return result


class CancellationToken:
    """Cooperative cancel flag with an optional deadline."""

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self):
        if self.cancelled:
            raise QueryCancelled("query cancelled")


# -------------------------------------------------------------------------------
# ENGINE
# -------------------------------------------------------------------------------

@dataclass
class QueryHit:
    """A matched record as returned to callers."""
    id: int
    source: str
    body: str
    tags: List[str]
    created_at: datetime
    score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "body": self.body,
            "tags": self.tags,
            "created_at": self.created_at.isoformat(),
            "score": self.score,
        }


class QueryEngine:
    """Evaluates expressions against the live index and the record store."""

    def __init__(self, store: RecordStore, index_ref: IndexRef):
        self.store = store
        self.index_ref = index_ref

    def evaluate(self, query: QueryInput, cancel: Optional[CancellationToken] = None) -> List[int]:
        """Matching live ids, ascending. Empty query gives []."""
        expr = to_expr(query)
        if expr is None:
            return []

        token = cancel or CancellationToken()
        index = self.index_ref.current
        ids = self._eval(expr, index, token)
        token.raise_if_cancelled()
        return [i for i in ids if not index.is_stale(i) and self.store.is_live(i)]

    def _eval(self, expr: Expr, index: InvertedIndex, token: CancellationToken) -> List[int]:
        token.raise_if_cancelled()

        if isinstance(expr, Term):
            tokens = expr.tokens
            if not tokens:
                return []
            postings = sorted((index.term_postings(t) for t in set(tokens)), key=len)
            return self._intersect_all(postings, token)

        if isinstance(expr, Tag):
            return index.tag_postings(expr.name)

        if isinstance(expr, And):
            if not expr.children:
                return []
            postings = sorted((self._eval(child, index, token) for child in expr.children), key=len)
            return self._intersect_all(postings, token)

        if isinstance(expr, Or):
            result: List[int] = []
            for child in expr.children:
                token.raise_if_cancelled()
                result = union_sorted(result, self._eval(child, index, token))
            return result

        raise QuerySyntaxError(f"unsupported expression {expr!r}")

    @staticmethod
    def _intersect_all(postings: List[List[int]], token: CancellationToken) -> List[int]:
        result = postings[0]
        for other in postings[1:]:
            if not result:
                break
            token.raise_if_cancelled()
            result = intersect_sorted(result, other)
        return result

    def _order_by_recency(self, ids: List[int]) -> List[int]:
        epoch = datetime.min

        def key(record_id: int):
            created = self.store.created_at(record_id)
            return (created.replace(tzinfo=None) if created else epoch, record_id)

        return sorted(ids, key=key, reverse=True)

    def run(
        self,
        query: QueryInput,
        limit: Optional[int] = None,
        rank: str = RANK_RECENCY,
        cancel: Optional[CancellationToken] = None,
    ) -> List[Tuple[int, Optional[float]]]:
        """Ordered (id, score) pairs. Score is None for recency ordering."""
        if rank not in RANK_MODES:
            raise ValueError(f"rank must be one of {RANK_MODES}, got {rank!r}")

        expr = to_expr(query)
        ids = self.evaluate(expr, cancel)
        if not ids:
            return []

        ordered = self._order_by_recency(ids)
        query_tokens = term_tokens(expr)

        if rank == RANK_RELEVANCE and query_tokens:
            records = self.store.get_many(ordered)
            ordered = [i for i in ordered if i in records]
            if not ordered:
                return []
            corpus = [tokenize(records[i].body) or [""] for i in ordered]
            scores = BM25Plus(corpus).get_scores(query_tokens)
            # sorted() is stable, so equal scores keep recency order
            scored = sorted(
                ((record_id, float(score)) for record_id, score in zip(ordered, scores)),
                key=lambda pair: pair[1],
                reverse=True,
            )
            result = scored
        else:
            result = [(record_id, None) for record_id in ordered]

        if limit is not None:
            result = result[:max(limit, 0)]
        return result

    def query_ids(self, query: QueryInput, **kwargs) -> List[int]:
        return [record_id for record_id, _ in self.run(query, **kwargs)]

    def search(self, query: QueryInput, **kwargs) -> List[QueryHit]:
        """Ordered hits with bodies. Records tombstoned mid-query are dropped."""
        ranked = self.run(query, **kwargs)
        records = self.store.get_many([record_id for record_id, _ in ranked])

        hits = []
        for record_id, score in ranked:
            record = records.get(record_id)
            if record is None:
                continue
            hits.append(QueryHit(
                id=record.id,
                source=record.source,
                body=record.body,
                tags=sorted(record.tags),
                created_at=record.created_at,
                score=score,
            ))
        return hits
