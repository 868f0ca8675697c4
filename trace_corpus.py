#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Trace corpus loading/saving, the textual trace encoding and the
append-only symbol vocabulary.

A trace is encoded as its tokens joined by ',' with one leading delimiter,
e.g. ['a', 'b', 'c'] -> ',a,b,c'. The empty trace encodes to ''.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from trace_errors import PreconditionError

DELIMITER = ","
RUN_PREFIX = "multi_"
SEQUENCE_PREFIX = "seq_"


def encode_trace(tokens: Sequence[str]) -> str:
    if not tokens:
        return ""
    return DELIMITER + DELIMITER.join(tokens)


def decode_trace(text: str) -> List[str]:
    if not text:
        return []
    if not text.startswith(DELIMITER):
        raise PreconditionError(f"Trace encoding must start with '{DELIMITER}': {text[:40]!r}")
    return text.split(DELIMITER)[1:]


def canonical_order(tokens: Iterable[str]) -> List[str]:
    """숫자형 action id는 정수 오름차순, 나머지는 문자열 오름차순으로 정렬합니다."""
    def _key(token: str):
        return (0, int(token), "") if token.isdigit() else (1, 0, token)
    return sorted(set(tokens), key=_key)


def _check_token(token: str) -> str:
    token = str(token)
    if not token or DELIMITER in token:
        raise PreconditionError(f"Token must be non-empty and must not contain '{DELIMITER}': {token!r}")
    return token


@dataclass(frozen=True)
class Trace:
    trace_id: str
    tokens: Tuple[str, ...]
    label: Optional[int] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    compacted: Optional[Tuple[str, ...]] = None

    @property
    def raw_length(self) -> int:
        return len(self.tokens)

    @property
    def compacted_tokens(self) -> Tuple[str, ...]:
        return self.tokens if self.compacted is None else self.compacted

    @property
    def compacted_length(self) -> int:
        return len(self.compacted_tokens)

    @property
    def text(self) -> str:
        return encode_trace(self.tokens)

    @property
    def compacted_text(self) -> str:
        return encode_trace(self.compacted_tokens)

    def with_compacted_text(self, text: str) -> "Trace":
        """압축 결과로 새 Trace 버전을 만듭니다 (원본은 그대로 유지)."""
        compacted = tuple(decode_trace(text))
        if len(compacted) > self.raw_length:
            raise PreconditionError(
                f"Compacted length {len(compacted)} exceeds raw length {self.raw_length} for trace {self.trace_id}"
            )
        return replace(self, compacted=compacted)

    def to_record(self) -> Dict[str, Any]:
        record = {
            "trace_id": self.trace_id,
            "tokens": list(self.tokens),
            "length": self.raw_length,
            "compacted_tokens": list(self.compacted_tokens),
            "compacted_length": self.compacted_length,
        }
        if self.label is not None:
            record["label"] = self.label
        record.update(self.attributes)
        return record


_RESERVED_KEYS = {"trace_id", "id", "tokens", "length", "label", "compacted_tokens", "compacted_length"}


def _trace_from_record(index: int, record: Any) -> Trace:
    # 기존 시퀀스 파일처럼 토큰 리스트만 있는 경우도 허용
    if isinstance(record, list):
        record = {"tokens": record}
    if not isinstance(record, dict):
        raise PreconditionError(f"Unsupported trace record at index {index}: {type(record).__name__}")

    tokens = record.get("tokens", [])
    if isinstance(tokens, str):
        tokens = decode_trace(tokens)
    tokens = tuple(_check_token(t) for t in tokens)

    length = record.get("length")
    if length is not None and int(length) != len(tokens):
        raise PreconditionError(
            f"Trace at index {index} declares length {length} but has {len(tokens)} tokens"
        )

    compacted = record.get("compacted_tokens")
    if isinstance(compacted, str):
        compacted = decode_trace(compacted)

    label = record.get("label")
    if label is None or label == "" or pd.isna(label):
        label = None
    else:
        label = int(label)

    trace_id = record.get("trace_id", record.get("id", index))
    attributes = {k: v for k, v in record.items() if k not in _RESERVED_KEYS}
    return Trace(
        trace_id=str(trace_id),
        tokens=tokens,
        label=label,
        attributes=attributes,
        compacted=tuple(compacted) if compacted is not None else None,
    )


def traces_from_records(records: Sequence[Any]) -> List[Trace]:
    traces = [_trace_from_record(i, rec) for i, rec in enumerate(records)]
    seen = set()
    for trace in traces:
        if trace.trace_id in seen:
            raise PreconditionError(f"Duplicate trace_id: {trace.trace_id}")
        seen.add(trace.trace_id)
    return traces


def load_trace_corpus(file_path: str) -> List[Trace]:
    """
    JSON(레코드 리스트 또는 토큰 리스트의 리스트), CSV, Parquet 형식의
    trace corpus를 읽어 Trace 목록으로 반환합니다.
    """
    path = Path(file_path)
    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            with path.open("r", encoding="utf-8") as f:
                records = json.load(f)
            if not isinstance(records, list):
                raise ValueError(f"Expected a JSON list of trace records in file: {file_path}")
        elif suffix == ".csv":
            records = pd.read_csv(path, dtype={"tokens": str}, keep_default_na=False).to_dict("records")
        elif suffix == ".parquet":
            records = pd.read_parquet(path).to_dict("records")
        else:
            raise ValueError(f"Unsupported corpus format '{suffix}' for file: {file_path}")
    except FileNotFoundError:
        raise FileNotFoundError(f"File not found: {file_path}")
    except json.JSONDecodeError:
        raise ValueError(f"Invalid JSON format in file: {file_path}")

    return traces_from_records(records)


def save_compacted_corpus(traces: Sequence[Trace], output_file: str) -> None:
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump([t.to_record() for t in traces], f, indent=2, default=str)
    print(f"Saved {len(traces)} compacted traces to '{output_file}'.")


class SymbolVocabulary:
    """
    Append-only symbol table. Base tokens are the raw action ids; derived
    symbols (run-collapse and mined-sequence symbols) map 1:1 to the pattern
    they replace. `version` increases with every append.
    """

    def __init__(self, base_tokens: Iterable[str] = ()):
        self._base: List[str] = []
        self._derived: Dict[str, Tuple[str, Tuple[str, ...]]] = {}
        self._by_pattern: Dict[Tuple[str, Tuple[str, ...]], str] = {}
        self.version = 0
        for token in canonical_order(base_tokens):
            self.add_base(token)

    @classmethod
    def from_traces(cls, traces: Sequence[Trace]) -> "SymbolVocabulary":
        return cls(t for trace in traces for t in trace.tokens)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._derived or symbol in self._base

    def __len__(self) -> int:
        return len(self._base) + len(self._derived)

    @property
    def base_tokens(self) -> List[str]:
        return list(self._base)

    @property
    def derived_symbols(self) -> List[str]:
        return list(self._derived)

    def kind_of(self, symbol: str) -> str:
        if symbol in self._derived:
            return self._derived[symbol][0]
        if symbol in self._base:
            return "base"
        raise KeyError(symbol)

    def pattern_of(self, symbol: str) -> Tuple[str, ...]:
        if symbol in self._derived:
            return self._derived[symbol][1]
        if symbol in self._base:
            return (symbol,)
        raise KeyError(symbol)

    def add_base(self, token: str) -> str:
        token = _check_token(token)
        if token in self._derived:
            raise PreconditionError(f"Base token {token!r} collides with a derived symbol")
        if token not in self._base:
            self._base.append(token)
            self.version += 1
        return token

    def _add_derived(self, kind: str, symbol: str, pattern: Tuple[str, ...]) -> str:
        symbol = _check_token(symbol)
        key = (kind, pattern)
        if key in self._by_pattern:
            existing = self._by_pattern[key]
            if existing != symbol:
                raise PreconditionError(f"Pattern {pattern} already named {existing!r}, cannot rename to {symbol!r}")
            return existing
        if symbol in self:
            raise PreconditionError(f"Symbol {symbol!r} is already in the vocabulary")
        self._derived[symbol] = key
        self._by_pattern[key] = symbol
        self.version += 1
        return symbol

    def run_symbol(self, token: str) -> str:
        """'multi_<token>' 심볼을 등록(또는 기존 것을 반환)합니다."""
        return self._add_derived("run", RUN_PREFIX + token, (token,))

    def sequence_symbol(self, name: str, tokens: Sequence[str]) -> str:
        return self._add_derived("sequence", name, tuple(tokens))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "base_tokens": list(self._base),
            "derived": [
                {"symbol": symbol, "kind": kind, "pattern": list(pattern)}
                for symbol, (kind, pattern) in self._derived.items()
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SymbolVocabulary":
        vocab = cls()
        for token in data.get("base_tokens", []):
            vocab.add_base(token)
        for entry in data.get("derived", []):
            vocab._add_derived(entry["kind"], entry["symbol"], tuple(entry["pattern"]))
        vocab.version = int(data.get("version", vocab.version))
        return vocab

    def save(self, output_file: str) -> None:
        with open(output_file, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        print(f"Saved vocabulary (version {self.version}, {len(self)} symbols) to '{output_file}'.")
