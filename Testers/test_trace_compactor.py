import json
import os

import pytest

from rewrite_rules import RUN, SubstitutionRule
from sequence_miner import FrequentSequence
import trace_compactor
from trace_compactor import (
    CompactionCheckpoint,
    TraceCompactor,
    compaction_fingerprint,
    compact_named_sequences,
    compact_runs,
    plan_run_pass,
    plan_sequence_pass,
)
from trace_corpus import SymbolVocabulary, Trace
from trace_errors import PreconditionError


def _seq(tokens, total_support, discovery_index, name):
    return FrequentSequence(tuple(tokens), 1.0, total_support, 1, 1, discovery_index, name)


def test_compact_runs_collapses_runs_in_vocabulary_order():
    assert compact_runs(",a,a,a,b", ["a", "b"]) == ",multi_a,b"
    assert compact_runs(",a,b,b", ["a", "b"]) == ",a,multi_b"


def test_compact_runs_absorbs_token_next_to_existing_multi_symbol():
    assert compact_runs(",multi_a,a,c,a,multi_a", ["a"]) == ",multi_a,c,multi_a"


def test_compact_runs_is_idempotent():
    once = compact_runs(",a,a,b,b,b,a,c,c", ["c", "b", "a"])
    assert once == ",multi_a,multi_b,a,multi_c"
    assert compact_runs(once, ["a", "b", "c"]) == once


def test_compact_runs_matches_whole_tokens_only():
    assert compact_runs(",ab,a,a,ba", ["a"]) == ",ab,multi_a,ba"
    assert compact_runs(",a.b,a.b,axb", ["a.b"]) == ",multi_a.b,axb"


def test_compact_runs_empty_trace():
    assert compact_runs("", ["a"]) == ""


def test_compact_named_sequences_substitutes_then_collapses_new_symbols():
    sequences = [_seq(["a", "b"], 0.5, 0, "seq_1"), _seq(["b", "c"], 0.4, 1, "seq_2")]
    assert compact_named_sequences(",a,b,c,a,b,a,b", sequences) == ",seq_1,c,multi_seq_1"


def test_compact_named_sequences_uses_total_support_order():
    sequences = [_seq(["a", "b"], 0.3, 0, "seq_2"), _seq(["b", "c"], 0.6, 1, "seq_1")]
    assert compact_named_sequences(",a,b,c", sequences) == ",a,seq_1"


def test_compact_named_sequences_skips_marker_literals_and_longer_sequences():
    sequences = [
        _seq(["True", "a"], 0.9, 0, "seq_1"),
        _seq(["a", "b", "c"], 0.9, 1, "seq_2"),
    ]
    assert compact_named_sequences(",True,a,b,c", sequences) == ",True,a,b,c"


def test_plan_sequence_pass_registers_symbols_in_vocabulary():
    vocab = SymbolVocabulary(["a", "b"])
    rules = plan_sequence_pass(vocab, [_seq(["a", "b"], 0.5, 0, "seq_1")])
    assert [r.symbol for r in rules] == ["seq_1", "multi_seq_1"]
    assert vocab.pattern_of("seq_1") == ("a", "b")
    assert vocab.kind_of("multi_seq_1") == "run"


def _corpus():
    return [
        Trace("t1", ("a", "a", "b", "b", "c", "c", "d", "d")),
        Trace("t2", ("d", "c", "c", "a")),
        Trace("t3", ()),
        Trace("t4", ("b", "b", "b")),
    ]


def test_compactor_parallel_matches_sequential():
    traces = _corpus()
    rules = plan_run_pass(SymbolVocabulary.from_traces(traces))
    sequential = TraceCompactor(workers=1, verbose=False).run(traces, rules)
    parallel = TraceCompactor(workers=3, verbose=False).run(traces, rules)
    assert [t.compacted for t in sequential] == [t.compacted for t in parallel]
    assert sequential[0].compacted == ("multi_a", "multi_b", "multi_c", "multi_d")
    assert sequential[2].compacted_length == 0
    for trace in sequential:
        assert trace.compacted_length <= trace.raw_length


def test_compactor_does_not_modify_input_traces():
    traces = _corpus()
    rules = plan_run_pass(SymbolVocabulary.from_traces(traces))
    TraceCompactor(verbose=False).run(traces, rules)
    assert traces[0].compacted is None


def _interrupt_after(monkeypatch, chunks):
    calls = []
    real = trace_compactor.run_fork_join

    def flaky(*args, **kwargs):
        if len(calls) == chunks:
            raise KeyboardInterrupt
        calls.append(1)
        return real(*args, **kwargs)

    monkeypatch.setattr(trace_compactor, "run_fork_join", flaky)


def test_compactor_resumes_from_checkpoint(tmp_path, monkeypatch):
    traces = _corpus()
    rules = plan_run_pass(SymbolVocabulary.from_traces(traces))
    checkpoint = str(tmp_path / "checkpoint.json")

    with monkeypatch.context() as m:
        _interrupt_after(m, 2)
        with pytest.raises(KeyboardInterrupt):
            TraceCompactor(checkpoint_file=checkpoint, checkpoint_every=1, verbose=False).run(traces, rules)
    with open(checkpoint) as f:
        saved = json.load(f)
    assert saved["iteration"] == 2
    assert len(saved["applied_rules"]) == 2
    assert len(saved["pending_rules"]) == len(rules) - 2
    assert saved["state"]["t1"] == ",multi_a,multi_b,c,c,d,d"

    resumed = TraceCompactor(checkpoint_file=checkpoint, checkpoint_every=1, verbose=False).run(traces, rules)
    fresh = TraceCompactor(verbose=False).run(traces, rules)
    assert [t.compacted for t in resumed] == [t.compacted for t in fresh]
    assert not os.path.exists(checkpoint)


def test_compactor_ignores_checkpoint_for_edited_corpus(tmp_path, monkeypatch):
    checkpoint = str(tmp_path / "checkpoint.json")
    before = [Trace("t1", ("a", "a", "b")), Trace("t2", ("c",))]
    rules = plan_run_pass(SymbolVocabulary(["a", "b", "c"]))
    with monkeypatch.context() as m:
        _interrupt_after(m, 2)
        with pytest.raises(KeyboardInterrupt):
            TraceCompactor(checkpoint_file=checkpoint, checkpoint_every=1, verbose=False).run(before, rules)
    assert os.path.exists(checkpoint)

    after = [Trace("t1", ("b", "b", "a")), Trace("t2", ("c",))]
    result = TraceCompactor(checkpoint_file=checkpoint, checkpoint_every=1, verbose=False).run(after, rules)
    assert [t.compacted for t in result] == [("multi_b", "a"), ("c",)]


def test_compactor_ignores_checkpoint_for_other_rules(tmp_path, monkeypatch):
    traces = _corpus()
    checkpoint = str(tmp_path / "checkpoint.json")
    rule_a = SubstitutionRule(RUN, ("a",), "multi_a")
    rule_b = SubstitutionRule(RUN, ("b",), "multi_b")
    with monkeypatch.context() as m:
        _interrupt_after(m, 1)
        with pytest.raises(KeyboardInterrupt):
            TraceCompactor(checkpoint_file=checkpoint, checkpoint_every=1, verbose=False).run(traces, [rule_a, rule_b])

    result = TraceCompactor(checkpoint_file=checkpoint, checkpoint_every=1, verbose=False).run(traces, [rule_b])
    assert result[0].compacted == ("a", "a", "multi_b", "c", "c", "d", "d")
    assert not os.path.exists(checkpoint)


def test_compactor_removes_checkpoint_after_completed_run(tmp_path):
    traces = _corpus()
    checkpoint = str(tmp_path / "checkpoint.json")
    rules = plan_run_pass(SymbolVocabulary.from_traces(traces))
    TraceCompactor(checkpoint_file=checkpoint, checkpoint_every=2, verbose=False).run(traces, rules)
    assert not os.path.exists(checkpoint)


def test_compactor_rejects_inconsistent_checkpoint(tmp_path):
    traces = _corpus()
    checkpoint = str(tmp_path / "checkpoint.json")
    rule_a = SubstitutionRule(RUN, ("a",), "multi_a")
    rule_b = SubstitutionRule(RUN, ("b",), "multi_b")
    rules = [rule_a, rule_b]
    state = {t.trace_id: t.compacted_text for t in traces}
    CompactionCheckpoint(1, [rule_b], [rule_a], state, compaction_fingerprint(state, rules)).save(checkpoint)
    with pytest.raises(PreconditionError):
        TraceCompactor(checkpoint_file=checkpoint, checkpoint_every=1, verbose=False).run(traces, rules)


def test_compactor_rejects_bad_settings():
    with pytest.raises(PreconditionError):
        TraceCompactor(workers=0)
    with pytest.raises(PreconditionError):
        TraceCompactor(checkpoint_every=-1)
