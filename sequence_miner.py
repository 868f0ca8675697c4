#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Apriori-style miner for frequent contiguous token sequences over textual
trace encodings (',a,b,c').

Two support measures are counted for every candidate:
  - case support : fraction of traces (long enough) containing it at least once
  - total support: fraction of all length-k windows in the corpus matching it
A candidate is frequent if it meets either threshold.
"""
from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from fork_join import partition, run_fork_join
from rewrite_rules import compile_sequence_matcher
from trace_corpus import SEQUENCE_PREFIX, canonical_order, decode_trace, encode_trace, load_trace_corpus
from trace_errors import PreconditionError


@dataclass(frozen=True)
class FrequentSequence:
    tokens: Tuple[str, ...]
    case_support: float
    total_support: float
    case_count: int
    total_count: int
    discovery_index: int
    name: str = ""

    @property
    def size(self) -> int:
        return len(self.tokens)

    @property
    def text(self) -> str:
        return encode_trace(self.tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "tokens": list(self.tokens),
            "size": self.size,
            "case_support": self.case_support,
            "total_support": self.total_support,
            "case_count": self.case_count,
            "total_count": self.total_count,
            "discovery_index": self.discovery_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FrequentSequence":
        return cls(
            tokens=tuple(data["tokens"]),
            case_support=float(data["case_support"]),
            total_support=float(data["total_support"]),
            case_count=int(data["case_count"]),
            total_count=int(data["total_count"]),
            discovery_index=int(data["discovery_index"]),
            name=data.get("name", ""),
        )


@dataclass(frozen=True)
class Candidate:
    tokens: Tuple[str, ...]
    parents: Optional[Tuple[Tuple[str, ...], Tuple[str, ...]]] = None


@dataclass
class LevelResult:
    size: int
    candidates: List[Candidate]
    case_counts: np.ndarray
    total_counts: np.ndarray
    case_denominator: int
    window_denominator: int
    frequent: List[FrequentSequence] = field(default_factory=list)


@dataclass(frozen=True)
class MinerConfig:
    case_support: float = 0.05
    total_support: float = 0.05
    max_length: int = 2
    workers: int = 1
    num_shards: Optional[int] = None

    def validate(self) -> None:
        if self.max_length < 1:
            raise PreconditionError(f"max_length must be >= 1, got {self.max_length}")
        for name in ("case_support", "total_support"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise PreconditionError(f"{name} threshold must be in (0, 1], got {value}")
        if self.workers < 1:
            raise PreconditionError(f"workers must be >= 1, got {self.workers}")
        if self.num_shards is not None and self.num_shards < 1:
            raise PreconditionError(f"num_shards must be >= 1, got {self.num_shards}")


@dataclass
class MiningResult:
    levels: List[LevelResult]
    sequences: List[FrequentSequence]

    def of_size(self, size: int) -> List[FrequentSequence]:
        return [s for s in self.sequences if s.size == size]

    def to_frame(self) -> pd.DataFrame:
        columns = ["name", "tokens", "size", "case_support", "total_support",
                   "case_count", "total_count", "discovery_index"]
        return pd.DataFrame([s.to_dict() for s in self.sequences], columns=columns)

    def save(self, output_file: str) -> None:
        with open(output_file, "w", encoding="utf-8") as f:
            json.dump([s.to_dict() for s in self.sequences], f, indent=2)
        print(f"Saved {len(self.sequences)} frequent sequences to '{output_file}'.")


def load_frequent_sequences(file_path: str) -> List[FrequentSequence]:
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return [FrequentSequence.from_dict(rec) for rec in json.load(f)]
    except FileNotFoundError:
        raise FileNotFoundError(f"File not found: {file_path}")
    except json.JSONDecodeError:
        raise ValueError(f"Invalid JSON format in file: {file_path}")


def _count_shard(candidates: Sequence[Tuple[str, ...]], texts: Sequence[str]) -> Tuple[np.ndarray, np.ndarray]:
    """한 샤드의 (case indicator 합, occurrence 합)을 후보별로 계산합니다."""
    case_counts = np.zeros(len(candidates), dtype=np.int64)
    total_counts = np.zeros(len(candidates), dtype=np.int64)
    for j, tokens in enumerate(candidates):
        matcher = compile_sequence_matcher(tokens)
        for text in texts:
            occurrences = len(matcher.findall(text))
            if occurrences:
                case_counts[j] += 1
                total_counts[j] += occurrences
    return case_counts, total_counts


def _add_counts(left: Tuple[np.ndarray, np.ndarray], right: Tuple[np.ndarray, np.ndarray]) -> Tuple[np.ndarray, np.ndarray]:
    return left[0] + right[0], left[1] + right[1]


def generate_candidates(frequent: Sequence[Tuple[str, ...]]) -> List[Candidate]:
    """
    Joins A and B into A + B[-1] when A's (k-1)-suffix equals B's
    (k-1)-prefix and A != B.
    """
    by_prefix: Dict[Tuple[str, ...], List[Tuple[str, ...]]] = {}
    for seq in frequent:
        by_prefix.setdefault(seq[:-1], []).append(seq)

    candidates = []
    for a in frequent:
        for b in by_prefix.get(a[1:], []):
            if a == b:
                continue
            candidates.append(Candidate(a + (b[-1],), (a, b)))
    return candidates


def _ratio(count: int, denominator: int) -> float:
    return float(count) / float(denominator) if denominator > 0 else 0.0


class SequenceMiner:
    def __init__(self, config: MinerConfig, verbose: bool = True):
        config.validate()
        self.config = config
        self.verbose = verbose

    def _count_level(self, candidates: List[Candidate], texts: Sequence[str], size: int) -> Tuple[np.ndarray, np.ndarray]:
        shards = partition(texts, self.config.num_shards or self.config.workers)
        zeros = np.zeros(len(candidates), dtype=np.int64)
        return run_fork_join(
            partial(_count_shard, [c.tokens for c in candidates]),
            shards,
            _add_counts,
            (zeros, zeros.copy()),
            workers=self.config.workers,
            phase=f"support counting (level {size})",
        )

    def mine(
        self,
        texts: Sequence[str],
        lengths: Sequence[int],
        alphabet: Optional[Sequence[str]] = None,
    ) -> MiningResult:
        if len(texts) != len(lengths):
            raise PreconditionError(f"Got {len(texts)} traces but {len(lengths)} lengths")
        cfg = self.config
        lengths_arr = np.asarray(lengths, dtype=np.int64)

        if alphabet is None:
            alphabet = canonical_order(t for text in texts for t in decode_trace(text))
        candidates = [Candidate((token,)) for token in alphabet]

        levels: List[LevelResult] = []
        discovered: List[FrequentSequence] = []
        for size in range(1, cfg.max_length + 1):
            if not candidates:
                break

            case_counts, total_counts = self._count_level(candidates, texts, size)
            case_den = int(np.sum(lengths_arr >= size))
            window_den = int(np.sum(np.maximum(lengths_arr - (size - 1), 0)))

            level = LevelResult(size, candidates, case_counts, total_counts, case_den, window_den)
            for cand, case_count, total_count in zip(candidates, case_counts, total_counts):
                case_support = _ratio(case_count, case_den)
                total_support = _ratio(total_count, window_den)
                if case_support >= cfg.case_support or total_support >= cfg.total_support:
                    level.frequent.append(FrequentSequence(
                        tokens=cand.tokens,
                        case_support=case_support,
                        total_support=total_support,
                        case_count=int(case_count),
                        total_count=int(total_count),
                        discovery_index=len(discovered) + len(level.frequent),
                    ))
            levels.append(level)
            discovered.extend(level.frequent)

            if self.verbose:
                print(f"  - Level {size}: {len(candidates)} candidates, {len(level.frequent)} frequent "
                      f"(traces >= {size}: {case_den}, windows: {window_den})")

            if size < cfg.max_length:
                candidates = generate_candidates([s.tokens for s in level.frequent])

        ordered = sorted(discovered, key=lambda s: (-s.size, -s.total_support, s.discovery_index))
        named = [
            replace(s, name=f"{SEQUENCE_PREFIX}{rank}")
            for rank, s in enumerate(ordered, start=1)
        ]
        return MiningResult(levels=levels, sequences=named)


def main():
    parser = argparse.ArgumentParser(description="Mine frequent contiguous token sequences from a trace corpus.")
    parser.add_argument("--corpus", type=str, required=True, help="Path to the trace corpus (.json/.csv/.parquet).")
    parser.add_argument("--output-file", type=str, default="frequent_sequences.json", help="Path to save the frequent sequences.")
    parser.add_argument("--case-support", type=float, default=0.05, help="Case-support threshold in (0, 1].")
    parser.add_argument("--total-support", type=float, default=0.05, help="Total-support threshold in (0, 1].")
    parser.add_argument("--max-length", type=int, default=2, help="Maximum sequence length.")
    parser.add_argument("--workers", type=int, default=1, help="Number of worker processes.")
    args = parser.parse_args()

    traces = load_trace_corpus(args.corpus)
    print(f"Loaded {len(traces)} traces from '{args.corpus}'.")
    config = MinerConfig(args.case_support, args.total_support, args.max_length, args.workers)
    miner = SequenceMiner(config)
    result = miner.mine([t.compacted_text for t in traces], [t.compacted_length for t in traces])
    result.save(args.output_file)


if __name__ == '__main__':
    main()
