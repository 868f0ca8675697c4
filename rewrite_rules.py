"""
Structured substitution rules and delimiter-anchored matchers.

Patterns are kept as token tuples and only compiled into regular expressions
at the last moment, with every token escaped, so a token such as 'a.b' or
'x|y' is always matched literally and never as a substring of another token.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from trace_corpus import DELIMITER, SymbolVocabulary, canonical_order
from trace_errors import PreconditionError

RUN = "run"
SEQUENCE = "sequence"
DEFAULT_MARKER_LITERALS = ("True", "False", "nan", "None")

_D = re.escape(DELIMITER)
_END = f"(?={_D}|$)"

# level 2 alone can produce |F1|^2 candidates; keep compiled patterns bounded
_PATTERN_CACHE_SIZE = 4096


@lru_cache(maxsize=_PATTERN_CACHE_SIZE)
def _compile_substitution(kind: str, tokens: Tuple[str, ...], symbol: str) -> "re.Pattern[str]":
    if kind == RUN:
        alt = f"(?:{re.escape(symbol)}|{re.escape(tokens[0])})"
        return re.compile(f"(?<={_D}){alt}(?:{_D}{alt})+{_END}")
    body = _D.join(re.escape(t) for t in tokens)
    return re.compile(f"(?<={_D}){body}{_END}")


@lru_cache(maxsize=_PATTERN_CACHE_SIZE)
def compile_sequence_matcher(tokens: Tuple[str, ...]) -> "re.Pattern[str]":
    """
    Zero-width matcher: one match per window start, so overlapping
    occurrences (',x,x' inside ',x,x,x') are all counted.
    """
    body = _D.join(re.escape(t) for t in tokens)
    return re.compile(f"(?={_D}{body}{_END})")


def count_occurrences(tokens: Tuple[str, ...], text: str) -> int:
    return len(compile_sequence_matcher(tokens).findall(text))


@dataclass(frozen=True)
class SubstitutionRule:
    kind: str
    tokens: Tuple[str, ...]
    symbol: str

    def __post_init__(self):
        if self.kind not in (RUN, SEQUENCE):
            raise PreconditionError(f"Unknown rule kind: {self.kind!r}")
        if self.kind == RUN and len(self.tokens) != 1:
            raise PreconditionError(f"Run rule must name exactly one token: {self.tokens}")
        if self.kind == SEQUENCE and len(self.tokens) < 2:
            raise PreconditionError(f"Sequence rule needs at least two tokens: {self.tokens}")

    def apply(self, text: str) -> str:
        if not text:
            return text
        return _compile_substitution(self.kind, self.tokens, self.symbol).sub(self.symbol, text)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "tokens": list(self.tokens), "symbol": self.symbol}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubstitutionRule":
        return cls(kind=data["kind"], tokens=tuple(data["tokens"]), symbol=data["symbol"])


def apply_rules(text: str, rules: Sequence[SubstitutionRule]) -> str:
    for rule in rules:
        text = rule.apply(text)
    return text


def rules_to_records(rules: Iterable[SubstitutionRule]) -> List[Dict[str, Any]]:
    return [rule.to_dict() for rule in rules]


def rules_from_records(records: Iterable[Dict[str, Any]]) -> List[SubstitutionRule]:
    return [SubstitutionRule.from_dict(rec) for rec in records]


def build_run_rules(vocabulary: SymbolVocabulary, tokens: Iterable[str]) -> List[SubstitutionRule]:
    """tokens를 정해진 순서(canonical order)로 run-collapse 규칙으로 만듭니다."""
    rules = []
    for token in canonical_order(tokens):
        symbol = vocabulary.run_symbol(token)
        rules.append(SubstitutionRule(RUN, (token,), symbol))
    return rules


def build_sequence_rules(
    vocabulary: SymbolVocabulary,
    frequent_sequences: Sequence[Any],
    size: int = 2,
    marker_literals: Sequence[str] = DEFAULT_MARKER_LITERALS,
) -> List[SubstitutionRule]:
    """
    Substitution rules for the mined sequences of the given size, ordered by
    (size desc, total_support desc, discovery order). Sequences containing a
    marker literal token are left out.
    """
    markers = set(marker_literals)
    ordered = sorted(
        (s for s in frequent_sequences if s.size == size),
        key=lambda s: (-s.size, -s.total_support, s.discovery_index),
    )
    rules = []
    for seq in ordered:
        if markers.intersection(seq.tokens):
            continue
        symbol = vocabulary.sequence_symbol(seq.name, seq.tokens)
        rules.append(SubstitutionRule(SEQUENCE, tuple(seq.tokens), symbol))
    return rules
