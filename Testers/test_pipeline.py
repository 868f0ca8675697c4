import json

import pandas as pd
import pytest

from analyze_traces import summarize_corpus
from main_trace_abstraction import run_pipeline
from sequence_miner import MinerConfig, load_frequent_sequences
from trace_corpus import load_trace_corpus
from trace_errors import PreconditionError

CORPUS = [
    {"trace_id": "p1", "tokens": ["open", "read", "read", "read", "close"], "device": "d1", "label": 0},
    {"trace_id": "p2", "tokens": ["open", "read", "close", "open", "read", "close"], "device": "d1", "label": 0},
    {"trace_id": "p3", "tokens": ["socket", "connect", "send", "send"], "device": "d2", "label": 1},
]

EMBEDDINGS = {
    "open": [1.0, 0.0],
    "close": [0.0, 1.0],
    "multi_read": [2.0, 2.0],
    "seq_1": [1.5, 0.5],
    "socket": [4.0, 0.0],
    "connect": [0.0, 4.0],
    "multi_send": [3.0, 3.0],
}


@pytest.fixture
def inputs(tmp_path):
    corpus = tmp_path / "corpus.json"
    corpus.write_text(json.dumps(CORPUS))
    embeddings = tmp_path / "embeddings.json"
    embeddings.write_text(json.dumps(EMBEDDINGS))
    return corpus, embeddings


def _run(inputs, out, **kwargs):
    corpus, embeddings = inputs
    config = MinerConfig(case_support=0.6, total_support=0.15, max_length=2)
    return run_pipeline(str(corpus), str(out), config, embeddings_file=str(embeddings), group_by=["device"], **kwargs)


def test_end_to_end(inputs, tmp_path):
    out = tmp_path / "out"
    traces, result, vocabulary = _run(inputs, out)

    assert [s.tokens for s in result.of_size(2)] == [("open", "read"), ("read", "close")]
    assert [t.compacted for t in traces] == [
        ("open", "multi_read", "close"),
        ("seq_1", "close", "seq_1", "close"),
        ("socket", "connect", "multi_send"),
    ]
    assert vocabulary.pattern_of("seq_1") == ("open", "read")

    assert load_frequent_sequences(str(out / "frequent_sequences.json")) == result.sequences
    compacted = load_trace_corpus(str(out / "compacted_traces.json"))
    assert [t.compacted_length for t in compacted] == [3, 4, 3]

    trace_features = pd.read_csv(out / "trace_features.csv")
    assert list(trace_features["trace_id"]) == ["p1", "p2", "p3"]
    assert trace_features.loc[1, "mean_0"] == pytest.approx(0.75)

    group_features = pd.read_csv(out / "group_features.csv")
    assert list(group_features["device"]) == ["d1", "d2"]
    assert list(group_features["trace_count"]) == [2, 1]
    assert list(group_features["label"]) == [0, 1]

    summary = summarize_corpus(compacted)
    assert summary["raw_tokens"] == 15
    assert summary["compacted_tokens"] == 10


def test_rerun_with_checkpoints_is_identical(inputs, tmp_path):
    out = tmp_path / "out"
    first, _, _ = _run(inputs, out, checkpoint_every=1)
    assert not (out / "checkpoint_pass1.json").exists()
    assert not (out / "checkpoint_pass2.json").exists()
    second, _, _ = _run(inputs, out, checkpoint_every=1)
    assert [t.compacted for t in first] == [t.compacted for t in second]


def test_rerun_after_corpus_edit_uses_new_traces(inputs, tmp_path):
    corpus, _ = inputs
    out = tmp_path / "out"
    _run(inputs, out, checkpoint_every=1)

    edited = [dict(record) for record in CORPUS]
    edited[0]["tokens"] = ["close", "close", "open"]
    corpus.write_text(json.dumps(edited))
    traces, _, _ = _run(inputs, out, checkpoint_every=1)
    assert traces[0].compacted == ("multi_close", "open")


def test_rerun_with_new_thresholds(inputs, tmp_path):
    corpus, _ = inputs
    out = tmp_path / "out"
    run_pipeline(str(corpus), str(out), MinerConfig(0.5, 0.5, 2), checkpoint_every=1)
    traces, result, _ = run_pipeline(str(corpus), str(out), MinerConfig(0.9, 0.9, 2), checkpoint_every=1)
    assert result.sequences == []
    assert traces[1].compacted == ("open", "read", "close", "open", "read", "close")


def test_invalid_thresholds_abort_before_output(inputs, tmp_path):
    corpus, _ = inputs
    out = tmp_path / "never"
    with pytest.raises(PreconditionError):
        run_pipeline(str(corpus), str(out), MinerConfig(case_support=0.0))
    assert not out.exists()
