from __future__ import annotations

import dataclasses
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Sequence

from records import TransactionRecord

logger = logging.getLogger(__name__)


class FilterParseError(ValueError):
    def __init__(self, message: str, position: Optional[int] = None) -> None:
        super().__init__(message)
        self.position = position


class NodeKind(str, Enum):
    text = "text"
    field = "field"
    and_ = "and"
    or_ = "or"
    not_ = "not"


class TextMatch(str, Enum):
    description = "contains"
    metadata = "contains_meta"


@dataclass(frozen=True)
class FilterNode:
    kind: NodeKind
    field: str = ""
    op: str = ""
    value: str = ""
    value_lo: str = ""
    value_hi: str = ""
    children: tuple[FilterNode, ...] = ()
    # Explicit parentheses in the source; ignored by equality.
    grouped: bool = dataclasses.field(default=False, compare=False)


FIELDS = frozenset({"desc", "note", "cat", "tag", "acc", "amt", "type", "date"})
_MULTI_WORD_FIELDS = frozenset({"desc", "note", "cat", "tag", "acc"})
_KEYWORDS = frozenset({"AND", "OR", "NOT"})
_AMOUNT_OPS = ("<=", ">=", "<", ">", "=")
MAX_NESTING = 64
_SPACE = " \t\r\n"
_WORD_BREAK = _SPACE + '():"'

_ISO_DAY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_MONTH = re.compile(r"^\d{4}-\d{2}$")
_SHORT_MONTH = re.compile(r"^\d{2}-\d{2}$")


# Lexer


class TokenKind(str, Enum):
    word = "word"
    quoted = "quoted"
    colon = "colon"
    lparen = "lparen"
    rparen = "rparen"
    and_ = "and"
    or_ = "or"
    not_ = "not"
    eof = "eof"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    pos: int


_SINGLE_CHAR_TOKENS = {
    "(": TokenKind.lparen,
    ")": TokenKind.rparen,
    ":": TokenKind.colon,
}
_KEYWORD_TOKENS = {
    "AND": TokenKind.and_,
    "OR": TokenKind.or_,
    "NOT": TokenKind.not_,
}


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in _SPACE:
            i += 1
            continue
        if ch in _SINGLE_CHAR_TOKENS:
            tokens.append(Token(_SINGLE_CHAR_TOKENS[ch], ch, i))
            i += 1
            continue
        if ch == '"':
            start = i
            i += 1
            chars: list[str] = []
            closed = False
            while i < len(text):
                if text[i] == '"':
                    i += 1
                    closed = True
                    break
                if text[i] == "\\":
                    if i + 1 >= len(text):
                        raise FilterParseError(
                            f"unterminated escape at {i + 1}", position=i + 1
                        )
                    nxt = text[i + 1]
                    if nxt not in ('"', "\\"):
                        raise FilterParseError(
                            f"unsupported escape \\{nxt} at {i + 1}", position=i + 1
                        )
                    chars.append(nxt)
                    i += 2
                    continue
                chars.append(text[i])
                i += 1
            if not closed:
                raise FilterParseError(
                    f"unterminated quoted string at {start + 1}", position=start + 1
                )
            tokens.append(Token(TokenKind.quoted, "".join(chars), start))
            continue

        start = i
        while i < len(text) and text[i] not in _WORD_BREAK:
            i += 1
        word = text[start:i]
        kind = _KEYWORD_TOKENS.get(word.upper(), TokenKind.word)
        tokens.append(Token(kind, word, start))
    tokens.append(Token(TokenKind.eof, "", len(text)))
    return tokens


# Parser


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self.tokens = tokens
        self.idx = 0
        self.depth = 0

    def peek(self) -> Token:
        return self.tokens[min(self.idx, len(self.tokens) - 1)]

    def consume(self) -> Token:
        tok = self.peek()
        if self.idx < len(self.tokens):
            self.idx += 1
        return tok

    def parse_expr(self) -> FilterNode:
        return self.parse_or()

    def parse_or(self) -> FilterNode:
        children = [self.parse_and()]
        while self.peek().kind == TokenKind.or_:
            self.consume()
            children.append(self.parse_and())
        if len(children) == 1:
            return children[0]
        return FilterNode(NodeKind.or_, children=_flatten(NodeKind.or_, children))

    def parse_and(self) -> FilterNode:
        children = [self.parse_unary()]
        while True:
            kind = self.peek().kind
            if kind == TokenKind.and_:
                self.consume()
                children.append(self.parse_unary())
            elif kind in (
                TokenKind.lparen,
                TokenKind.word,
                TokenKind.quoted,
                TokenKind.not_,
            ):
                children.append(self.parse_unary())
            else:
                break
        if len(children) == 1:
            return children[0]
        return FilterNode(NodeKind.and_, children=_flatten(NodeKind.and_, children))

    def enter(self, tok: Token) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise FilterParseError(
                f"expression nested too deeply at {tok.pos + 1}", position=tok.pos + 1
            )

    def parse_unary(self) -> FilterNode:
        tok = self.peek()
        if tok.kind == TokenKind.not_:
            self.enter(tok)
            self.consume()
            node = FilterNode(NodeKind.not_, children=(self.parse_unary(),))
            self.depth -= 1
            return node
        return self.parse_term()

    def parse_term(self) -> FilterNode:
        tok = self.peek()
        if tok.kind == TokenKind.lparen:
            self.enter(tok)
            self.consume()
            node = self.parse_expr()
            if self.peek().kind != TokenKind.rparen:
                nxt = self.peek()
                raise FilterParseError(
                    f"missing ')' at {nxt.pos + 1}", position=nxt.pos + 1
                )
            self.consume()
            self.depth -= 1
            return dataclasses.replace(node, grouped=True)
        if tok.kind == TokenKind.quoted:
            self.consume()
            return FilterNode(
                NodeKind.text, op=TextMatch.description.value, value=tok.text
            )
        if tok.kind == TokenKind.word:
            if self.is_field_predicate_at(self.idx):
                return self.parse_field_predicate()
            if self.tokens[self.idx + 1].kind == TokenKind.colon:
                raise FilterParseError(
                    f"unknown field {tok.text!r} at {tok.pos + 1}",
                    position=tok.pos + 1,
                )
            self.consume()
            return FilterNode(
                NodeKind.text, op=TextMatch.description.value, value=tok.text
            )
        if tok.kind == TokenKind.eof:
            raise FilterParseError("unexpected end of expression", position=tok.pos + 1)
        raise FilterParseError(
            f"unexpected token {tok.text!r} at {tok.pos + 1}", position=tok.pos + 1
        )

    def is_field_predicate_at(self, i: int) -> bool:
        if i + 1 >= len(self.tokens):
            return False
        tok = self.tokens[i]
        if tok.kind != TokenKind.word or self.tokens[i + 1].kind != TokenKind.colon:
            return False
        return tok.text.strip().lower() in FIELDS

    def parse_field_predicate(self) -> FilterNode:
        field_tok = self.consume()
        self.consume()  # colon
        name = field_tok.text.strip().lower()
        raw = self.collect_value(name, allow_multi=name in _MULTI_WORD_FIELDS)
        pos = field_tok.pos + 1

        if name == "amt":
            return _amount_node(raw, pos)
        if name == "date":
            return _date_node(raw, pos)
        if name == "type":
            kind = raw.strip().lower()
            if kind not in ("debit", "credit"):
                raise FilterParseError(
                    f"type expects debit|credit at {pos}", position=pos
                )
            return FilterNode(NodeKind.field, field=name, op="=", value=kind)
        if name in ("desc", "note"):
            return FilterNode(
                NodeKind.field, field=name, op="contains", value=raw.strip()
            )
        return FilterNode(NodeKind.field, field=name, op="=", value=raw.strip())

    def collect_value(self, name: str, *, allow_multi: bool) -> str:
        if self.peek().kind == TokenKind.quoted:
            return self.consume().text
        words: list[str] = []
        while self.peek().kind == TokenKind.word:
            if words and self.is_field_predicate_at(self.idx):
                break
            if self.tokens[self.idx + 1].kind == TokenKind.colon:
                break
            words.append(self.consume().text)
            if not allow_multi:
                break
        if not words:
            tok = self.peek()
            if tok.kind in (TokenKind.eof, TokenKind.rparen):
                raise FilterParseError(
                    f"{name}: missing value at {tok.pos + 1}", position=tok.pos + 1
                )
            raise FilterParseError(
                f"{name}: invalid value near {tok.text!r}", position=tok.pos + 1
            )
        return " ".join(words)


def _flatten(kind: NodeKind, children: Iterable[FilterNode]) -> tuple[FilterNode, ...]:
    out: list[FilterNode] = []
    for child in children:
        if child is None:
            continue
        if child.kind == kind:
            out.extend(child.children)
        else:
            out.append(child)
    return tuple(out)


def _parse_number(raw: str) -> float:
    text = raw.strip()
    if not text:
        raise ValueError("empty number")
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"number out of range: {raw!r}")
    return value


def canonical_number(value: float) -> str:
    text = repr(float(value))
    if "e" in text:
        text = format(Decimal(text), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def _amount_node(raw: str, pos: int) -> FilterNode:
    value = raw.strip().replace(" ", "")
    if not value:
        raise FilterParseError(f"amt: missing value at {pos}", position=pos)
    if ".." in value:
        lo_text, hi_text = value.split("..", 1)
        if not lo_text or not hi_text:
            raise FilterParseError(f"amt: invalid range {raw!r}", position=pos)
        try:
            lo = _parse_number(lo_text)
        except ValueError:
            raise FilterParseError(
                f"amt: invalid range low {lo_text!r}", position=pos
            ) from None
        try:
            hi = _parse_number(hi_text)
        except ValueError:
            raise FilterParseError(
                f"amt: invalid range high {hi_text!r}", position=pos
            ) from None
        if lo > hi:
            raise FilterParseError("amt: range low > high", position=pos)
        return FilterNode(
            NodeKind.field,
            field="amt",
            op="..",
            value_lo=canonical_number(lo),
            value_hi=canonical_number(hi),
        )
    op = "="
    number_text = value
    for candidate in _AMOUNT_OPS:
        if value.startswith(candidate):
            op = candidate
            number_text = value[len(candidate) :]
            break
    try:
        number = _parse_number(number_text)
    except ValueError:
        raise FilterParseError(
            f"amt: invalid number {number_text!r}", position=pos
        ) from None
    return FilterNode(
        NodeKind.field, field="amt", op=op, value=canonical_number(number)
    )


def canonical_date_token(raw: str) -> str:
    value = raw.strip()
    if _ISO_DAY.match(value):
        date.fromisoformat(value)
        return value
    if _ISO_MONTH.match(value):
        year, month = int(value[:4]), int(value[5:])
    elif _SHORT_MONTH.match(value):
        year, month = 2000 + int(value[:2]), int(value[3:])
    else:
        raise ValueError(f"invalid date token {raw!r}")
    if year < 1 or not 1 <= month <= 12:
        raise ValueError(f"invalid month {raw!r}")
    return f"{year:04d}-{month:02d}"


def date_token_bounds(token: str) -> tuple[date, date]:
    """Inclusive first and last day covered by a canonical date token."""
    if _ISO_DAY.match(token):
        day = date.fromisoformat(token)
        return day, day
    start = date(int(token[:4]), int(token[5:7]), 1)
    if start.month == 12:
        next_month = date(start.year + 1, 1, 1)
    else:
        next_month = date(start.year, start.month + 1, 1)
    return start, next_month - timedelta(days=1)


def _date_node(raw: str, pos: int) -> FilterNode:
    value = raw.strip().replace(" ", "")
    if not value:
        raise FilterParseError(f"date: missing value at {pos}", position=pos)
    if ".." in value:
        lo_text, hi_text = value.split("..", 1)
        if not lo_text or not hi_text:
            raise FilterParseError(f"date: invalid range {raw!r}", position=pos)
        try:
            lo = canonical_date_token(lo_text)
        except ValueError:
            raise FilterParseError(
                f"date: invalid start {lo_text!r}", position=pos
            ) from None
        try:
            hi = canonical_date_token(hi_text)
        except ValueError:
            raise FilterParseError(
                f"date: invalid end {hi_text!r}", position=pos
            ) from None
        if date_token_bounds(hi)[1] < date_token_bounds(lo)[0]:
            raise FilterParseError("date: range start is after end", position=pos)
        return FilterNode(
            NodeKind.field, field="date", op="..", value_lo=lo, value_hi=hi
        )
    try:
        token = canonical_date_token(value)
    except ValueError:
        raise FilterParseError(f"date: invalid value {raw!r}", position=pos) from None
    return FilterNode(NodeKind.field, field="date", op="=", value=token)


def _parse(text: str) -> FilterNode:
    parser = _Parser(tokenize(text))
    node = parser.parse_expr()
    tok = parser.peek()
    if tok.kind != TokenKind.eof:
        raise FilterParseError(
            f"unexpected token {tok.text!r} at {tok.pos + 1}", position=tok.pos + 1
        )
    return node


def fallback_text_filter(text: str) -> Optional[FilterNode]:
    value = text.strip()
    if not value:
        return None
    return FilterNode(NodeKind.text, op=TextMatch.metadata.value, value=value)


def parse(text: str) -> Optional[FilterNode]:
    """
    Lenient parse used for live filtering. Malformed input degrades to a single
    metadata text leaf holding the trimmed input instead of raising.
    """
    if not text or not text.strip():
        return None
    try:
        return _parse(text)
    except FilterParseError as exc:
        logger.debug(f"filter_fallback: text={text!r} error={exc}")
        return fallback_text_filter(text)


def parse_strict(text: str) -> Optional[FilterNode]:
    """
    Strict parse used when binding saved filters to rules and targets.
    Raises FilterParseError on malformed input or on AND/OR mixed without
    parentheses.
    """
    if not text or not text.strip():
        return None
    node = _parse(text)
    if _has_ungrouped_mix(node):
        raise FilterParseError(
            "strict mode requires parentheses when mixing AND/OR; "
            f"try: {to_string(node)}"
        )
    return node


def _has_ungrouped_mix(node: FilterNode) -> bool:
    for child in node.children:
        if node.kind == NodeKind.and_ and child.kind == NodeKind.or_:
            if not child.grouped:
                return True
        if node.kind == NodeKind.or_ and child.kind == NodeKind.and_:
            if not child.grouped:
                return True
        if _has_ungrouped_mix(child):
            return True
    return False


def contains_field_predicate(node: Optional[FilterNode]) -> bool:
    if node is None:
        return False
    if node.kind == NodeKind.field:
        return True
    return any(contains_field_predicate(child) for child in node.children)


def reclassify(node: Optional[FilterNode]) -> Optional[FilterNode]:
    """Copy of the tree whose text leaves also match category, tags and dates."""
    if node is None:
        return None
    if node.kind == NodeKind.text:
        return dataclasses.replace(node, op=TextMatch.metadata.value)
    if not node.children:
        return node
    return dataclasses.replace(
        node, children=tuple(reclassify(child) for child in node.children)
    )


def compile_filter(text: str, *, strict: bool = False) -> Optional[FilterNode]:
    node = parse_strict(text) if strict else parse(text)
    if node is not None and not contains_field_predicate(node):
        node = reclassify(node)
    return node


def and_nodes(*nodes: Optional[FilterNode]) -> Optional[FilterNode]:
    return _combine(NodeKind.and_, nodes)


def or_nodes(*nodes: Optional[FilterNode]) -> Optional[FilterNode]:
    return _combine(NodeKind.or_, nodes)


def _combine(
    kind: NodeKind, nodes: Sequence[Optional[FilterNode]]
) -> Optional[FilterNode]:
    children = _flatten(kind, (n for n in nodes if n is not None))
    if not children:
        return None
    if len(children) == 1:
        return children[0]
    return FilterNode(kind, children=children)


# Evaluation


def _tag_name(tag: object) -> str:
    if isinstance(tag, str):
        return tag.strip()
    return (getattr(tag, "name", "") or "").strip()


def evaluate(
    node: Optional[FilterNode], txn: TransactionRecord, tags: Iterable = ()
) -> bool:
    if node is None:
        return True
    tag_names = [_tag_name(t) for t in tags]
    return _eval(node, txn, tag_names)


def _eval(node: FilterNode, txn: TransactionRecord, tag_names: list[str]) -> bool:
    if node.kind == NodeKind.text:
        needle = node.value.strip().lower()
        if not needle:
            return True
        return _eval_text(node.op, needle, txn, tag_names)
    if node.kind == NodeKind.field:
        return _eval_field(node, txn, tag_names)
    if node.kind == NodeKind.and_:
        return all(_eval(child, txn, tag_names) for child in node.children)
    if node.kind == NodeKind.or_:
        return any(_eval(child, txn, tag_names) for child in node.children)
    if node.kind == NodeKind.not_:
        if not node.children:
            return True
        return not _eval(node.children[0], txn, tag_names)
    raise ValueError(f"Unknown filter node kind: {node.kind}")


def _eval_text(
    op: str, needle: str, txn: TransactionRecord, tag_names: list[str]
) -> bool:
    if needle in (txn.description or "").lower():
        return True
    if op != TextMatch.metadata.value:
        return False
    haystacks = [txn.category_name or "", txn.date_raw or "", txn.date_iso or ""]
    haystacks.extend(tag_names)
    return any(needle in h.lower() for h in haystacks)


def _eval_field(
    node: FilterNode, txn: TransactionRecord, tag_names: list[str]
) -> bool:
    name = node.field
    if name == "desc":
        return node.value.lower() in (txn.description or "").lower()
    if name == "note":
        return node.value.lower() in (txn.notes or "").lower()
    if name == "cat":
        return _same_text(txn.category_name, node.value)
    if name == "acc":
        return _same_text(txn.account_name, node.value)
    if name == "tag":
        return any(_same_text(tag, node.value) for tag in tag_names)
    if name == "type":
        if node.value == "debit":
            return txn.amount < 0
        if node.value == "credit":
            return txn.amount > 0
        return False
    if name == "amt":
        return _eval_amount(node, float(txn.amount))
    if name == "date":
        return _eval_date(node, txn.date_iso)
    return False


def _same_text(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().casefold() == (b or "").strip().casefold()


def _eval_amount(node: FilterNode, amount: float) -> bool:
    try:
        if node.op == "..":
            return float(node.value_lo) <= amount <= float(node.value_hi)
        value = float(node.value)
    except ValueError:
        return False
    if node.op == "=":
        return amount == value
    if node.op == ">":
        return amount > value
    if node.op == "<":
        return amount < value
    if node.op == ">=":
        return amount >= value
    if node.op == "<=":
        return amount <= value
    return False


def _eval_date(node: FilterNode, date_iso: str) -> bool:
    try:
        txn_date = date.fromisoformat((date_iso or "").strip())
    except ValueError:
        return False
    if node.op == "=":
        lo, hi = date_token_bounds(node.value)
    elif node.op == "..":
        lo = date_token_bounds(node.value_lo)[0]
        hi = date_token_bounds(node.value_hi)[1]
    else:
        return False
    return lo <= txn_date <= hi


# Rendering

_PRECEDENCE = {
    NodeKind.or_: 1,
    NodeKind.and_: 2,
    NodeKind.not_: 3,
    NodeKind.text: 4,
    NodeKind.field: 4,
}


def to_string(node: Optional[FilterNode]) -> str:
    """
    Canonical text for a tree. Mixed AND/OR is always parenthesized so the
    output is accepted by parse_strict and parses back to an equal tree.
    Metadata text leaves render as plain text; re-apply compile_filter to
    get them back.
    """
    if node is None:
        return ""
    return _render(node)


def _render(node: FilterNode) -> str:
    if node.kind == NodeKind.text:
        return format_value(node.value)
    if node.kind == NodeKind.field:
        return _render_field(node)
    if node.kind == NodeKind.not_:
        if not node.children:
            return "NOT"
        return "NOT " + _render_child(node.children[0], node.kind)
    if node.kind in (NodeKind.and_, NodeKind.or_):
        joiner = " AND " if node.kind == NodeKind.and_ else " OR "
        return joiner.join(_render_child(child, node.kind) for child in node.children)
    raise ValueError(f"Unknown filter node kind: {node.kind}")


def _render_child(child: FilterNode, parent: NodeKind) -> str:
    text = _render(child)
    if _PRECEDENCE[child.kind] < _PRECEDENCE[parent]:
        return f"({text})"
    if {parent, child.kind} == {NodeKind.and_, NodeKind.or_}:
        return f"({text})"
    return text


def _render_field(node: FilterNode) -> str:
    if node.op == "..":
        return f"{node.field}:{node.value_lo}..{node.value_hi}"
    if node.field == "amt":
        return f"amt:{node.op}{node.value}"
    if node.field in ("type", "date"):
        return f"{node.field}:{node.value}"
    return f"{node.field}:{format_value(node.value)}"


def is_bare_word(value: str) -> bool:
    if not value.strip():
        return False
    if any(ch in _WORD_BREAK for ch in value):
        return False
    return value.upper() not in _KEYWORDS


def format_value(value: str) -> str:
    if is_bare_word(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


# Saved filter identifiers

SAVED_FILTER_ID_MAX = 63
_SAVED_FILTER_ID = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


def slugify_saved_filter_id(raw: str) -> str:
    raw = (raw or "").strip().lower()
    out: list[str] = []
    last_sep = False
    for ch in raw:
        if ("a" <= ch <= "z") or ("0" <= ch <= "9"):
            out.append(ch)
            last_sep = False
        elif out and not last_sep:
            out.append(ch if ch in "_-" else "-")
            last_sep = True
    slug = "".join(out)[:SAVED_FILTER_ID_MAX].strip("-_")
    return slug or "filter"


def normalize_saved_filter_id(raw: str) -> str:
    value = (raw or "").strip().lower()
    if not value:
        raise ValueError("Saved filter id is required")
    if len(value) > SAVED_FILTER_ID_MAX:
        raise ValueError(
            f"Saved filter id must be at most {SAVED_FILTER_ID_MAX} characters"
        )
    if not _SAVED_FILTER_ID.match(value):
        raise ValueError(
            "Saved filter id must start with a letter or digit and contain only "
            "a-z, 0-9, '-' or '_'"
        )
    return value


def next_unique_saved_filter_id(existing: Iterable[str], base: str) -> str:
    candidate = slugify_saved_filter_id(base)
    seen = {(value or "").strip().lower() for value in existing}
    if candidate not in seen:
        return candidate
    for i in range(2, 10_000):
        suffix = f"-{i}"
        nxt = candidate[: SAVED_FILTER_ID_MAX - len(suffix)] + suffix
        if nxt not in seen:
            return nxt
    raise ValueError(f"No free saved filter id for {base!r}")
