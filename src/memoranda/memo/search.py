"""Inverted index over memo titles, contents and tags.

Query syntax:
    bare terms            implicit AND:          ``bearer token``
    quoted phrases        adjacent positions:    ``"bearer token"``
    AND / OR / NOT        left to right:         ``api OR rest NOT draft``
    parentheses           grouping:              ``(api OR rest) AND auth``
    ``*`` wildcards       prefix/suffix/infix:   ``auth*``, ``*ing``
    ``tag:`` filters      exact tag match:       ``tag:security``

Matching is case-insensitive. Tags are indexed as a third field next to the
title and content. Score per matched term is
``(content_tf + title_weight * title_tf + tag_weight * tag_tf) * idf``,
summed over the query, plus a small boost that decays with the memo's age.
Ties break on newer ``updated_at``, then ascending id.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from memoranda.config import SearchConfig
from memoranda.errors import IndexCorruption, ValidationError
from memoranda.memo.models import Memo, utcnow, validate_query

logger = logging.getLogger(__name__)

TITLE = "title"
CONTENT = "content"
TAGS = "tags"
FIELDS = (TITLE, CONTENT, TAGS)
OPERATORS = {"AND", "OR", "NOT"}
TAG_PREFIX = "tag:"
MAX_HIGHLIGHT_TERMS = 50
MAX_QUERY_DEPTH = 64
MAX_QUERY_TERMS = 100

_TOKEN = re.compile(r"\w+")
_LEXEME = re.compile(r'\s*(?:(?P<paren>[()])|"(?P<phrase>[^"]*)"?|(?P<word>[^\s()"]+))')


def tokenize(text: str) -> list[str]:
    """Lowercased Unicode word tokens."""
    return [m.group(0).lower() for m in _TOKEN.finditer(text)]


# ── Query AST ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Term:
    token: str


@dataclass(frozen=True)
class Phrase:
    tokens: tuple[str, ...]


@dataclass(frozen=True)
class Wildcard:
    pattern: str

    def compile(self) -> re.Pattern:
        parts = self.pattern.lower().split("*")
        return re.compile("".join(["^", ".*".join(re.escape(p) for p in parts), "$"]))


@dataclass(frozen=True)
class Tag:
    name: str


@dataclass(frozen=True)
class And:
    left: Node
    right: Node


@dataclass(frozen=True)
class Or:
    left: Node
    right: Node


@dataclass(frozen=True)
class Not:
    operand: Node


Node = Term | Phrase | Wildcard | Tag | And | Or | Not


class _Parser:
    """Recursive descent, no operator precedence: ``a OR b c`` is ``(a OR b) AND c``."""

    def __init__(self, text: str) -> None:
        self.items: list[tuple[str, str]] = []
        for m in _LEXEME.finditer(text):
            if m.group("paren"):
                self.items.append(("paren", m.group("paren")))
            elif m.group("phrase") is not None:
                self.items.append(("phrase", m.group("phrase")))
            elif m.group("word"):
                word = m.group("word")
                self.items.append(("op" if word in OPERATORS else "word", word))
        self.pos = 0
        self.depth = 0
        self.terms = 0

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_QUERY_DEPTH:
            raise ValidationError(
                f"Query nests deeper than {MAX_QUERY_DEPTH} levels", field="query"
            )

    def _leaf(self, node: Node) -> Node:
        self.terms += 1
        if self.terms > MAX_QUERY_TERMS:
            raise ValidationError(
                f"Query cannot have more than {MAX_QUERY_TERMS} terms", field="query"
            )
        return node

    def _peek(self) -> tuple[str, str] | None:
        return self.items[self.pos] if self.pos < len(self.items) else None

    def parse(self) -> Node | None:
        node = None
        while self.pos < len(self.items):
            # Stray closing parentheses at top level are ignored
            if self._peek() == ("paren", ")"):
                self.pos += 1
                continue
            node = _combine(node, "AND", self._expression())
        return node

    def _expression(self) -> Node | None:
        node = None
        while (item := self._peek()) is not None and item != ("paren", ")"):
            if item[0] == "op" and item[1] in ("AND", "OR"):
                self.pos += 1
                node = _combine(node, item[1], self._unary())
            else:
                node = _combine(node, "AND", self._unary())
        return node

    def _unary(self) -> Node | None:
        item = self._peek()
        if item is None:
            return None
        self.pos += 1
        kind, value = item
        if kind == "op":
            if value == "NOT":
                self._enter()
                operand = self._unary()
                self.depth -= 1
                return Not(operand) if operand is not None else None
            return None  # operator with nothing on its left
        if kind == "paren":
            if value == ")":
                return None
            self._enter()
            node = self._expression()
            self.depth -= 1
            if self._peek() == ("paren", ")"):
                self.pos += 1
            return node
        if kind == "word":
            if value.lower().startswith(TAG_PREFIX) and len(value) > len(TAG_PREFIX):
                return self._leaf(Tag(value[len(TAG_PREFIX):].lower()))
            if "*" in value:
                return self._leaf(Wildcard(value))
        tokens = tokenize(value)
        if not tokens:
            return None
        if len(tokens) == 1:
            return self._leaf(Term(tokens[0]))
        return self._leaf(Phrase(tuple(tokens)))


def _combine(left: Node | None, op: str, right: Node | None) -> Node | None:
    if left is None:
        return right
    if right is None:
        return left
    return Or(left, right) if op == "OR" else And(left, right)


def parse_query(expression: str) -> Node:
    """Parse a query string; raises ValidationError when nothing searchable remains."""
    validate_query(expression)
    node = _Parser(expression).parse()
    if node is None:
        raise ValidationError("Query contains no searchable terms", field="query")
    return node


def _highlight_terms(node: Node, negated: bool = False) -> list[str]:
    """Regex fragments for the positive leaves of a query, used for snippets."""
    if isinstance(node, Term):
        return [] if negated else [re.escape(node.token)]
    if isinstance(node, Phrase):
        return [] if negated else [r"\W+".join(re.escape(t) for t in node.tokens)]
    if isinstance(node, Wildcard):
        if negated:
            return []
        return [r"\w*".join(re.escape(p) for p in node.pattern.split("*"))]
    if isinstance(node, Tag):
        return []
    if isinstance(node, Not):
        return _highlight_terms(node.operand, not negated)
    return _highlight_terms(node.left, negated) + _highlight_terms(node.right, negated)


# ── Index ─────────────────────────────────────────────────────


@dataclass
class Posting:
    field: str
    term_frequency: int
    positions: list[int]


@dataclass
class IndexedDoc:
    id: str
    title: str
    content: str
    updated_at: datetime
    tags: frozenset[str] = field(default_factory=frozenset)
    terms: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class SearchHit:
    id: str
    title: str
    score: float
    snippet: str
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "score": self.score,
            "snippet": self.snippet,
            "updated_at": self.updated_at.isoformat(),
        }


def _positions(tokens: Iterable[str]) -> dict[str, list[int]]:
    result: dict[str, list[int]] = {}
    for i, token in enumerate(tokens):
        result.setdefault(token, []).append(i)
    return result


def _tag_positions(tags: Iterable[str]) -> dict[str, list[int]]:
    """Positions over all tags, with a gap so a phrase never spans two tags."""
    result: dict[str, list[int]] = {}
    pos = 0
    for tag in tags:
        for token in tokenize(tag):
            result.setdefault(token, []).append(pos)
            pos += 1
        pos += 1
    return result


class SearchIndex:
    """token → memo id → field → Posting, maintained one memo at a time."""

    def __init__(self, config: SearchConfig | None = None) -> None:
        self.config = config or SearchConfig()
        self._postings: dict[str, dict[str, dict[str, Posting]]] = {}
        self._docs: dict[str, IndexedDoc] = {}

    def __len__(self) -> int:
        return len(self._docs)

    def __contains__(self, memo_id: str) -> bool:
        return memo_id in self._docs

    @property
    def vocabulary_size(self) -> int:
        return len(self._postings)

    # ── Maintenance ───────────────────────────────────────────

    def index(self, memo: Memo) -> None:
        """Replace all postings for this memo with ones for its current text."""
        self.remove(memo.id)
        fields = {
            TITLE: _positions(tokenize(memo.title)),
            CONTENT: _positions(tokenize(memo.content)),
            TAGS: _tag_positions(memo.tags),
        }
        terms: set[str] = set()
        for field_name, positions in fields.items():
            for token, where in positions.items():
                by_doc = self._postings.setdefault(token, {})
                by_doc.setdefault(memo.id, {})[field_name] = Posting(
                    field=field_name, term_frequency=len(where), positions=where
                )
                terms.add(token)
        self._docs[memo.id] = IndexedDoc(
            id=memo.id,
            title=memo.title,
            content=memo.content,
            updated_at=memo.updated_at,
            tags=frozenset(t.lower() for t in memo.tags),
            terms=frozenset(terms),
        )

    def remove(self, memo_id: str) -> None:
        doc = self._docs.pop(memo_id, None)
        if doc is None:
            return
        for token in doc.terms:
            by_doc = self._postings.get(token)
            if by_doc is None:
                continue
            by_doc.pop(memo_id, None)
            if not by_doc:
                del self._postings[token]

    def clear(self) -> None:
        self._postings.clear()
        self._docs.clear()

    def check(self) -> None:
        """Verify postings and documents agree; raises IndexCorruption."""
        for token, by_doc in self._postings.items():
            for memo_id in by_doc:
                doc = self._docs.get(memo_id)
                if doc is None or token not in doc.terms:
                    raise IndexCorruption(
                        f"Posting for '{token}' references an unindexed memo", memo_id=memo_id
                    )
        for doc in self._docs.values():
            for token in doc.terms:
                if doc.id not in self._postings.get(token, {}):
                    raise IndexCorruption(f"Missing posting for '{token}'", memo_id=doc.id)

    # ── Querying ──────────────────────────────────────────────

    def query(self, expression: str, now: datetime | None = None) -> list[SearchHit]:
        node = parse_query(expression)
        matches = self._evaluate(node)
        if not matches:
            return []

        now = now or utcnow()
        highlight = self._highlighter(node)
        hits = []
        for memo_id, score in matches.items():
            doc = self._docs.get(memo_id)
            if doc is None:
                raise IndexCorruption("Search matched an unindexed memo", memo_id=memo_id)
            hits.append(
                SearchHit(
                    id=memo_id,
                    title=doc.title,
                    score=round(score + self._recency_boost(doc.updated_at, now), 9),
                    snippet=self._snippet(doc.content, highlight),
                    updated_at=doc.updated_at,
                )
            )
        hits.sort(key=lambda h: (-h.score, -h.updated_at.timestamp(), h.id))
        return hits

    def _idf(self, document_frequency: int) -> float:
        if not document_frequency:
            return 0.0
        return math.log(1 + len(self._docs) / document_frequency)

    def _recency_boost(self, updated_at: datetime, now: datetime) -> float:
        age_days = max(0.0, (now - updated_at).total_seconds() / 86400)
        return self.config.recency_weight / (1 + age_days / self.config.recency_days)

    def _field_score(self, title_tf: int, content_tf: int, tag_tf: int = 0) -> float:
        return (
            content_tf
            + self.config.title_weight * title_tf
            + self.config.tag_weight * tag_tf
        )

    def _evaluate(self, node: Node) -> dict[str, float]:
        if isinstance(node, Term):
            return self._score_term(node.token)
        if isinstance(node, Phrase):
            return self._score_phrase(node.tokens)
        if isinstance(node, Tag):
            return {
                doc.id: self.config.tag_weight for doc in self._docs.values() if node.name in doc.tags
            }
        if isinstance(node, Wildcard):
            pattern = node.compile()
            scores: dict[str, float] = {}
            for token in [t for t in self._postings if pattern.match(t)]:
                for memo_id, score in self._score_term(token).items():
                    scores[memo_id] = scores.get(memo_id, 0.0) + score
            return scores
        if isinstance(node, Not):
            excluded = self._evaluate(node.operand)
            return {memo_id: 0.0 for memo_id in self._docs if memo_id not in excluded}
        left = self._evaluate(node.left)
        right = self._evaluate(node.right)
        if isinstance(node, And):
            return {k: v + right[k] for k, v in left.items() if k in right}
        merged = dict(left)
        for k, v in right.items():
            merged[k] = merged.get(k, 0.0) + v
        return merged

    def _score_term(self, token: str) -> dict[str, float]:
        by_doc = self._postings.get(token, {})
        idf = self._idf(len(by_doc))
        scores = {}
        for memo_id, fields in by_doc.items():
            title = fields.get(TITLE)
            content = fields.get(CONTENT)
            tags = fields.get(TAGS)
            tf = self._field_score(
                title.term_frequency if title else 0,
                content.term_frequency if content else 0,
                tags.term_frequency if tags else 0,
            )
            scores[memo_id] = tf * idf
        return scores

    def _score_phrase(self, tokens: tuple[str, ...]) -> dict[str, float]:
        postings = [self._postings.get(t, {}) for t in tokens]
        candidates = set(postings[0])
        for by_doc in postings[1:]:
            candidates &= set(by_doc)
        idf = sum(self._idf(len(by_doc)) for by_doc in postings)

        scores = {}
        for memo_id in candidates:
            counts = {}
            for field_name in FIELDS:
                per_token = [by_doc[memo_id].get(field_name) for by_doc in postings]
                if any(p is None for p in per_token):
                    counts[field_name] = 0
                    continue
                following = [set(p.positions) for p in per_token[1:]]
                counts[field_name] = sum(
                    1
                    for start in per_token[0].positions
                    if all(start + i + 1 in where for i, where in enumerate(following))
                )
            tf = self._field_score(counts[TITLE], counts[CONTENT], counts[TAGS])
            if tf:
                scores[memo_id] = tf * idf
        return scores

    # ── Snippets ──────────────────────────────────────────────

    def _highlighter(self, node: Node) -> re.Pattern | None:
        fragments = _highlight_terms(node)[:MAX_HIGHLIGHT_TERMS]
        if not fragments:
            return None
        return re.compile(rf"(?<!\w)(?:{'|'.join(fragments)})(?!\w)", re.IGNORECASE)

    def _snippet(self, content: str, highlight: re.Pattern | None) -> str:
        length = self.config.snippet_length
        match = highlight.search(content) if highlight is not None else None
        if match is None:
            start, end = 0, min(len(content), length)
        else:
            half = length // 2
            start = max(0, match.start() - half)
            end = min(len(content), match.end() + half)
        snippet = " ".join(content[start:end].split())
        if start > 0:
            snippet = "..." + snippet
        if end < len(content):
            snippet += "..."
        return snippet
