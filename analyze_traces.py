import argparse
from collections import Counter
from typing import Any, Dict, Sequence

import numpy as np

from trace_corpus import Trace, load_trace_corpus


def summarize_corpus(traces: Sequence[Trace], top_n: int = 10) -> Dict[str, Any]:
    """원본/압축 길이 분포와 토큰 빈도를 요약합니다."""
    raw_lengths = np.array([t.raw_length for t in traces], dtype=np.int64)
    compacted_lengths = np.array([t.compacted_length for t in traces], dtype=np.int64)
    token_counts = Counter(tok for t in traces for tok in t.compacted_tokens)

    raw_total = int(raw_lengths.sum())
    summary = {
        "traces": len(traces),
        "raw_tokens": raw_total,
        "compacted_tokens": int(compacted_lengths.sum()),
        "reduction": float(1.0 - compacted_lengths.sum() / raw_total) if raw_total else 0.0,
        "vocabulary_size": len(token_counts),
        "top_tokens": token_counts.most_common(top_n),
        "labels": dict(Counter(t.label for t in traces if t.label is not None)),
    }
    for name, lengths in (("raw", raw_lengths), ("compacted", compacted_lengths)):
        if len(lengths):
            summary[f"{name}_length"] = (int(lengths.min()), int(lengths.max()), float(lengths.mean()))
        else:
            summary[f"{name}_length"] = (0, 0, 0.0)
    return summary


def print_summary(summary: Dict[str, Any]) -> None:
    print("--- Trace length analysis ---")
    print(f"Total traces: {summary['traces']}")
    for name in ("raw", "compacted"):
        lo, hi, mean = summary[f"{name}_length"]
        print(f"{name.capitalize()} min/max/mean length: {lo} / {hi} / {mean:.2f}")
    print(f"Tokens: {summary['raw_tokens']} -> {summary['compacted_tokens']} (Reduction: {summary['reduction'] * 100:.2f}%)")
    if summary["labels"]:
        print(f"Labels: {summary['labels']}")

    print("\n--- Token frequency analysis ---")
    print(f"Unique tokens (Vocab size): {summary['vocabulary_size']}")
    print(f"Top {len(summary['top_tokens'])} tokens:")
    for token, count in summary["top_tokens"]:
        print(f"{token}: {count}")


def plot_lengths(traces: Sequence[Trace]) -> None:
    import matplotlib.pyplot as plt

    plt.hist([t.raw_length for t in traces], bins=30, alpha=0.6, label="raw")
    plt.hist([t.compacted_length for t in traces], bins=30, alpha=0.6, label="compacted")
    plt.title("Trace Length Distribution")
    plt.xlabel("Length")
    plt.ylabel("Frequency")
    plt.legend()
    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Summarize a (compacted) trace corpus.")
    parser.add_argument("--corpus", type=str, required=True, help="Path to the trace corpus or compacted_traces.json.")
    parser.add_argument("--top", type=int, default=10, help="Number of most frequent tokens to list.")
    parser.add_argument("--plot", action="store_true", help="Show the length histogram.")
    args = parser.parse_args()

    traces = load_trace_corpus(args.corpus)
    print_summary(summarize_corpus(traces, args.top))
    if args.plot:
        plot_lengths(traces)
