#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Trace compaction: collapses repeated-action runs into 'multi_<token>'
symbols and substitutes mined frequent pairs with their assigned names.

Rules are applied in one fixed, totally ordered list. Each trace sees the
rules strictly in that order; traces themselves are processed in parallel.
"""
from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from tqdm import tqdm

from fork_join import concat, partition, run_fork_join
from rewrite_rules import (
    DEFAULT_MARKER_LITERALS,
    RUN,
    SubstitutionRule,
    apply_rules,
    build_run_rules,
    build_sequence_rules,
    rules_from_records,
    rules_to_records,
)
from trace_corpus import RUN_PREFIX, SymbolVocabulary, Trace, canonical_order
from trace_errors import PreconditionError


def compact_runs(text: str, vocabulary: Union[SymbolVocabulary, Iterable[str]]) -> str:
    """
    각 토큰의 연속 반복(2회 이상)을 'multi_<token>' 하나로 접습니다.
    이미 만들어진 multi 심볼 앞뒤에 붙은 같은 토큰도 함께 접습니다.
    """
    tokens = vocabulary.base_tokens if isinstance(vocabulary, SymbolVocabulary) else vocabulary
    rules = [SubstitutionRule(RUN, (t,), RUN_PREFIX + t) for t in canonical_order(tokens)]
    return apply_rules(text, rules)


def compact_named_sequences(
    text: str,
    frequent_sequences: Sequence[Any],
    marker_literals: Sequence[str] = DEFAULT_MARKER_LITERALS,
) -> str:
    """Substitutes mined size-2 sequences, then collapses runs of the new symbols."""
    scratch = SymbolVocabulary()
    rules = build_sequence_rules(scratch, frequent_sequences, size=2, marker_literals=marker_literals)
    text = apply_rules(text, rules)
    return compact_runs(text, [r.symbol for r in rules])


def plan_run_pass(vocabulary: SymbolVocabulary) -> List[SubstitutionRule]:
    return build_run_rules(vocabulary, vocabulary.base_tokens)


def plan_sequence_pass(
    vocabulary: SymbolVocabulary,
    frequent_sequences: Sequence[Any],
    marker_literals: Sequence[str] = DEFAULT_MARKER_LITERALS,
) -> List[SubstitutionRule]:
    """
    2차 압축 규칙 목록: 빈발 2-시퀀스 치환 규칙 다음에
    새로 생긴 심볼들의 run-collapse 규칙이 이어집니다.
    """
    sequence_rules = build_sequence_rules(vocabulary, frequent_sequences, size=2, marker_literals=marker_literals)
    run_rules = build_run_rules(vocabulary, [r.symbol for r in sequence_rules])
    return sequence_rules + run_rules


def _apply_rule_chunk(rules: Sequence[SubstitutionRule], items: Sequence[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(trace_id, apply_rules(text, rules)) for trace_id, text in items]


def compaction_fingerprint(state: Dict[str, str], rules: Sequence[SubstitutionRule]) -> str:
    """Identifies one compaction job: the starting corpus state plus the full rule list."""
    payload = json.dumps({"state": state, "rules": rules_to_records(rules)}, sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class CompactionCheckpoint:
    iteration: int
    applied_rules: List[SubstitutionRule]
    pending_rules: List[SubstitutionRule]
    state: Dict[str, str] = field(default_factory=dict)
    fingerprint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "fingerprint": self.fingerprint,
            "applied_rules": rules_to_records(self.applied_rules),
            "pending_rules": rules_to_records(self.pending_rules),
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompactionCheckpoint":
        return cls(
            iteration=int(data["iteration"]),
            applied_rules=rules_from_records(data["applied_rules"]),
            pending_rules=rules_from_records(data.get("pending_rules", [])),
            state=dict(data["state"]),
            fingerprint=data.get("fingerprint", ""),
        )

    def save(self, path: str) -> None:
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f)
        os.replace(tmp_path, path)

    @classmethod
    def load(cls, path: str) -> "CompactionCheckpoint":
        try:
            with open(path, "r", encoding="utf-8") as f:
                return cls.from_dict(json.load(f))
        except json.JSONDecodeError:
            raise ValueError(f"Invalid JSON format in checkpoint file: {path}")


class TraceCompactor:
    def __init__(
        self,
        workers: int = 1,
        checkpoint_file: Optional[str] = None,
        checkpoint_every: int = 0,
        verbose: bool = True,
    ):
        if workers < 1:
            raise PreconditionError(f"workers must be >= 1, got {workers}")
        if checkpoint_every < 0:
            raise PreconditionError(f"checkpoint_every must be >= 0, got {checkpoint_every}")
        self.workers = workers
        self.checkpoint_file = checkpoint_file
        self.checkpoint_every = checkpoint_every
        self.verbose = verbose

    def _resume(self, fingerprint: str, rules: Sequence[SubstitutionRule]) -> Optional[CompactionCheckpoint]:
        if not self.checkpoint_file or not Path(self.checkpoint_file).exists():
            return None
        checkpoint = CompactionCheckpoint.load(self.checkpoint_file)
        if checkpoint.fingerprint != fingerprint:
            # 다른 corpus 또는 다른 규칙 목록으로 만든 checkpoint: 처음부터 다시 실행
            if self.verbose:
                print(f"Ignoring stale checkpoint '{self.checkpoint_file}': it was written for a different corpus or rule list.")
            return None
        applied = checkpoint.applied_rules
        if list(rules[:len(applied)]) != applied:
            raise PreconditionError(
                f"Checkpoint '{self.checkpoint_file}' is inconsistent "
                f"(its {len(applied)} applied rules are not a prefix of the requested rules)"
            )
        if self.verbose:
            print(f"Resuming compaction from '{self.checkpoint_file}': {len(applied)}/{len(rules)} rules already applied.")
        return checkpoint

    def run(self, traces: Sequence[Trace], rules: Sequence[SubstitutionRule]) -> List[Trace]:
        """
        Applies `rules` in order to every trace's current compacted text and
        returns new Trace versions. With a checkpoint file, progress is saved
        after every `checkpoint_every` rules. A checkpoint left by an
        interrupted run over the same corpus state and rule list is resumed;
        any other checkpoint is ignored and overwritten. The checkpoint is
        removed once the run completes.
        """
        rules = list(rules)
        initial_state = {t.trace_id: t.compacted_text for t in traces}
        fingerprint = compaction_fingerprint(initial_state, rules)
        checkpoint = self._resume(fingerprint, rules)
        if checkpoint is not None:
            state = dict(checkpoint.state)
            applied = list(checkpoint.applied_rules)
            iteration = checkpoint.iteration
        else:
            state = initial_state
            applied = []
            iteration = 0

        chunk_size = self.checkpoint_every or max(len(rules) - len(applied), 1)
        starts = range(len(applied), len(rules), chunk_size)
        if self.verbose and len(starts) > 1:
            starts = tqdm(starts, desc="Compacting")

        order = [t.trace_id for t in traces]
        for start in starts:
            chunk = rules[start:start + chunk_size]
            items = [(trace_id, state[trace_id]) for trace_id in order]
            results = run_fork_join(
                partial(_apply_rule_chunk, chunk),
                partition(items, self.workers),
                concat,
                [],
                workers=self.workers,
                phase=f"compaction rules {start}-{start + len(chunk) - 1}",
            )
            state.update(results)
            applied.extend(chunk)
            iteration += 1
            if self.checkpoint_file:
                CompactionCheckpoint(iteration, applied, rules[len(applied):], state, fingerprint).save(self.checkpoint_file)

        compacted = [t.with_compacted_text(state[t.trace_id]) for t in traces]
        if self.checkpoint_file and Path(self.checkpoint_file).exists():
            os.remove(self.checkpoint_file)
        if self.verbose:
            raw_total = sum(t.raw_length for t in compacted)
            new_total = sum(t.compacted_length for t in compacted)
            print(f"Applied {len(rules)} rules to {len(compacted)} traces: {raw_total} -> {new_total} tokens.")
        return compacted
