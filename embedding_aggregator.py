#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Mergeable sufficient statistics over per-token embeddings.

Each trace is summarized as {n, sum[D], mean_of_squares[D], min[D], max[D]}.
These rows merge across any grouping (device, time window, ...) and are then
normalized into mean/std/min/max feature vectors, without keeping the raw
per-token vectors around.
"""
from __future__ import annotations

import json
import re
import warnings
from dataclasses import dataclass
from functools import partial, reduce
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from fork_join import concat, partition, run_fork_join
from trace_corpus import Trace
from trace_errors import DataConsistencyWarning, PreconditionError


def load_embeddings(embeddings_file: str) -> Dict[str, np.ndarray]:
    """사전 훈련된 토큰 임베딩({token: [float, ...]})을 로드합니다."""
    print(f"Loading token embeddings from '{embeddings_file}'...")
    try:
        with open(embeddings_file, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"File not found: {embeddings_file}")
    except json.JSONDecodeError:
        raise ValueError(f"Invalid JSON format in file: {embeddings_file}")

    table = {str(token): np.asarray(vec, dtype=np.float64) for token, vec in raw.items()}
    embedding_dim(table)
    print(f"Loaded {len(table)} token embeddings.")
    return table


def embedding_dim(table: Dict[str, np.ndarray]) -> int:
    if not table:
        raise PreconditionError("Embedding table is empty")
    dims = {vec.shape for vec in table.values()}
    if len(dims) != 1 or len(next(iter(dims))) != 1:
        raise PreconditionError(f"All embeddings must be 1-D vectors of the same length, got shapes {sorted(dims)}")
    return next(iter(dims))[0]


@dataclass
class SufficientStats:
    n: int
    sum: np.ndarray
    mean_of_squares: np.ndarray
    min: np.ndarray
    max: np.ndarray

    @classmethod
    def zeros(cls, dim: int) -> "SufficientStats":
        return cls(0, np.zeros(dim), np.zeros(dim), np.zeros(dim), np.zeros(dim))

    @classmethod
    def from_vectors(cls, vectors: np.ndarray, dim: int) -> "SufficientStats":
        if len(vectors) == 0:
            return cls.zeros(dim)
        vectors = np.asarray(vectors, dtype=np.float64)
        return cls(
            n=len(vectors),
            sum=vectors.sum(axis=0),
            mean_of_squares=np.mean(vectors ** 2, axis=0),
            min=vectors.min(axis=0),
            max=vectors.max(axis=0),
        )

    @property
    def dim(self) -> int:
        return len(self.sum)

    def merge(self, other: "SufficientStats") -> "SufficientStats":
        # n=0 행은 항등원: 0으로 채워진 min/max가 섞이지 않도록 건너뜀
        if other.n == 0:
            return self
        if self.n == 0:
            return other
        n = self.n + other.n
        return SufficientStats(
            n=n,
            sum=self.sum + other.sum,
            mean_of_squares=(self.n * self.mean_of_squares + other.n * other.mean_of_squares) / n,
            min=np.minimum(self.min, other.min),
            max=np.maximum(self.max, other.max),
        )

    def normalize(self) -> Dict[str, np.ndarray]:
        """
        mean = sum / n, std = sqrt(max(0, E[x^2] - mean^2) * n / (n - 1)) for n > 1.
        n <= 1 gives the single token's value (or zeros) and std 0.
        """
        if self.n == 0:
            mean = np.zeros(self.dim)
        else:
            mean = self.sum / self.n
        if self.n > 1:
            variance = np.maximum(0.0, self.mean_of_squares - mean ** 2) * self.n / (self.n - 1)
            std = np.sqrt(variance)
        else:
            std = np.zeros(self.dim)
        return {"mean": mean, "std": std, "min": self.min.copy(), "max": self.max.copy()}

    def to_row(self) -> np.ndarray:
        return np.concatenate([[self.n], self.sum, self.mean_of_squares, self.min, self.max])

    @classmethod
    def from_row(cls, row: Sequence[float], dim: int) -> "SufficientStats":
        row = np.asarray(row, dtype=np.float64)
        return cls(
            n=int(row[0]),
            sum=row[1:1 + dim],
            mean_of_squares=row[1 + dim:1 + 2 * dim],
            min=row[1 + 2 * dim:1 + 3 * dim],
            max=row[1 + 3 * dim:1 + 4 * dim],
        )


def merge_all(stats: Sequence[SufficientStats], dim: int) -> SufficientStats:
    return reduce(SufficientStats.merge, stats, SufficientStats.zeros(dim))


def trace_raw_stats(tokens: Sequence[str], table: Dict[str, np.ndarray], dim: int) -> Tuple[SufficientStats, int]:
    """Returns the trace's stats and the number of tokens missing from the table."""
    vectors = [table[t] for t in tokens if t in table]
    return SufficientStats.from_vectors(np.asarray(vectors).reshape(len(vectors), dim), dim), len(tokens) - len(vectors)


def _stats_shard(table: Dict[str, np.ndarray], dim: int, items: Sequence[Tuple[str, Tuple[str, ...]]]) -> List[Tuple[str, SufficientStats, int]]:
    rows = []
    for trace_id, tokens in items:
        stats, missing = trace_raw_stats(tokens, table, dim)
        rows.append((trace_id, stats, missing))
    return rows


_STATS_COLUMN = re.compile(r"^(sum|msq|min|max)_\d+$")
_RESERVED_COLUMNS = {"trace_id", "label", "n", "trace_count"}


def _column_names(dim: int) -> Dict[str, List[str]]:
    return {key: [f"{key}_{d}" for d in range(dim)] for key in ("sum", "msq", "min", "max")}


def _check_attribute_names(traces: Sequence[Trace]) -> None:
    clashes = sorted({
        str(name) for t in traces for name in t.attributes
        if name in _RESERVED_COLUMNS or _STATS_COLUMN.match(str(name))
    })
    if clashes:
        raise PreconditionError(f"Trace attributes collide with statistics columns: {clashes}")


def stats_frame(
    traces: Sequence[Trace],
    table: Dict[str, np.ndarray],
    workers: int = 1,
    use_compacted: bool = True,
) -> pd.DataFrame:
    """
    Per-trace raw statistics as a DataFrame: trace_id, label, grouping
    attributes, n, sum_*, msq_*, min_*, max_*.
    """
    dim = embedding_dim(table)
    _check_attribute_names(traces)
    items = [(t.trace_id, t.compacted_tokens if use_compacted else t.tokens) for t in traces]
    rows = run_fork_join(
        partial(_stats_shard, table, dim),
        partition(items, workers),
        concat,
        [],
        workers=workers,
        phase="per-trace embedding statistics",
    )

    missing_total = sum(missing for _, _, missing in rows)
    if missing_total:
        affected = sum(1 for _, _, missing in rows if missing)
        warnings.warn(
            f"Skipped {missing_total} tokens missing from the embedding table in {affected} traces",
            DataConsistencyWarning,
            stacklevel=2,
        )

    cols = _column_names(dim)
    value_columns = ["n"] + cols["sum"] + cols["msq"] + cols["min"] + cols["max"]
    values = pd.DataFrame([stats.to_row() for _, stats, _ in rows], columns=value_columns)
    values["n"] = values["n"].astype(np.int64)

    meta = pd.DataFrame([
        {"trace_id": t.trace_id, "label": t.label, **t.attributes} for t in traces
    ], columns=None if traces else ["trace_id", "label"])
    meta["label"] = pd.to_numeric(meta["label"], errors="coerce")
    return pd.concat([meta.reset_index(drop=True), values], axis=1)


def _dim_of(frame: pd.DataFrame) -> int:
    return sum(1 for c in frame.columns if _STATS_COLUMN.match(str(c)) and str(c).startswith("sum_"))


def aggregate_groups(frame: pd.DataFrame, group_by: Sequence[str]) -> pd.DataFrame:
    """
    여러 trace 행을 그룹 키별로 병합합니다.
    n, sum은 합, min/max는 원소별 최소/최대,
    mean_of_squares는 n 가중 평균 (= 그룹 전체 토큰의 E[x^2]).
    """
    group_by = list(group_by)
    missing = [c for c in group_by if c not in frame.columns]
    if missing:
        raise PreconditionError(f"Group-by columns not found in statistics table: {missing}")

    cols = _column_names(_dim_of(frame))
    work = frame.copy()
    work[cols["msq"]] = work[cols["msq"]].mul(work["n"], axis=0)
    empty = work["n"] == 0
    work.loc[empty, cols["min"]] = np.inf
    work.loc[empty, cols["max"]] = -np.inf

    agg = {"n": "sum"}
    agg.update({c: "sum" for c in cols["sum"] + cols["msq"]})
    agg.update({c: "min" for c in cols["min"]})
    agg.update({c: "max" for c in cols["max"]})
    if "label" in work.columns:
        agg["label"] = "max"

    grouped = work.groupby(group_by, sort=True, dropna=False)
    merged = grouped.agg(agg)
    merged.insert(0, "trace_count", grouped.size())

    n = merged["n"]
    merged[cols["msq"]] = merged[cols["msq"]].div(n.where(n > 0, 1), axis=0)
    merged[cols["min"] + cols["max"]] = merged[cols["min"] + cols["max"]].replace([np.inf, -np.inf], 0.0)
    return merged.reset_index()


def normalize_frame(frame: pd.DataFrame, id_columns: Sequence[str]) -> pd.DataFrame:
    """Turns a statistics table into a feature table: ids, mean_*, std_*, min_*, max_*."""
    dim = _dim_of(frame)
    cols = _column_names(dim)
    n = frame["n"].to_numpy(dtype=np.float64)[:, None]
    sums = frame[cols["sum"]].to_numpy(dtype=np.float64)
    msq = frame[cols["msq"]].to_numpy(dtype=np.float64)

    safe_n = np.where(n > 0, n, 1.0)
    mean = sums / safe_n
    with np.errstate(divide="ignore", invalid="ignore"):
        variance = np.maximum(0.0, msq - mean ** 2) * n / (n - 1)
    std = np.where(n > 1, np.sqrt(np.where(n > 1, variance, 0.0)), 0.0)

    features = frame[list(id_columns)].reset_index(drop=True).copy()
    blocks = [
        pd.DataFrame(mean, columns=[f"mean_{d}" for d in range(dim)]),
        pd.DataFrame(std, columns=[f"std_{d}" for d in range(dim)]),
        frame[cols["min"]].reset_index(drop=True).set_axis([f"min_{d}" for d in range(dim)], axis=1),
        frame[cols["max"]].reset_index(drop=True).set_axis([f"max_{d}" for d in range(dim)], axis=1),
    ]
    return pd.concat([features] + blocks, axis=1)
