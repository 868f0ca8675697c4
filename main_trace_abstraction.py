import argparse
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from embedding_aggregator import aggregate_groups, load_embeddings, normalize_frame, stats_frame
from rewrite_rules import DEFAULT_MARKER_LITERALS
from sequence_miner import MinerConfig, MiningResult, SequenceMiner
from trace_compactor import TraceCompactor, plan_run_pass, plan_sequence_pass
from trace_corpus import SymbolVocabulary, Trace, load_trace_corpus, save_compacted_corpus
from trace_errors import PreconditionError, WorkerFailure


def run_pipeline(
    corpus_file: str,
    output_dir: str,
    config: MinerConfig,
    embeddings_file: Optional[str] = None,
    group_by: Sequence[str] = (),
    checkpoint_every: int = 0,
    marker_literals: Sequence[str] = DEFAULT_MARKER_LITERALS,
) -> Tuple[List[Trace], MiningResult, SymbolVocabulary]:
    """
    run-collapse 압축 -> 빈발 시퀀스 마이닝 -> 빈발 2-시퀀스 치환 및 재압축
    -> (임베딩이 주어지면) trace/그룹 단위 특징 테이블 생성.
    """
    config.validate()
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    # 1. Corpus 로드
    print(f"--- 1. Loading trace corpus: {corpus_file} ---")
    traces = load_trace_corpus(corpus_file)
    vocabulary = SymbolVocabulary.from_traces(traces)
    print(f"-> {len(traces)} traces, {len(vocabulary)} base tokens")

    def _compactor(name: str) -> TraceCompactor:
        checkpoint = str(out / f"checkpoint_{name}.json") if checkpoint_every else None
        return TraceCompactor(config.workers, checkpoint_file=checkpoint, checkpoint_every=checkpoint_every)

    # 2. 1차 압축: 연속 반복 접기
    print("--- 2. Compaction pass 1 (run collapsing) ---")
    traces = _compactor("pass1").run(traces, plan_run_pass(vocabulary))

    # 3. 빈발 시퀀스 마이닝
    print(f"--- 3. Mining frequent sequences (max length {config.max_length}) ---")
    miner = SequenceMiner(config)
    result = miner.mine([t.compacted_text for t in traces], [t.compacted_length for t in traces])
    result.save(str(out / "frequent_sequences.json"))

    # 4. 2차 압축: 빈발 2-시퀀스 치환 후 새 심볼 반복 접기
    print("--- 4. Compaction pass 2 (frequent pair substitution) ---")
    rules = plan_sequence_pass(vocabulary, result.sequences, marker_literals)
    traces = _compactor("pass2").run(traces, rules)
    save_compacted_corpus(traces, str(out / "compacted_traces.json"))
    vocabulary.save(str(out / "vocabulary.json"))

    # 5. 임베딩 기반 특징 벡터
    if embeddings_file:
        print("--- 5. Building embedding feature tables ---")
        table = load_embeddings(embeddings_file)
        frame = stats_frame(traces, table, workers=config.workers)
        trace_features = normalize_frame(frame, ["trace_id", "label"])
        trace_features.to_csv(out / "trace_features.csv", index=False)
        print(f"Saved {len(trace_features)} trace feature rows to '{out / 'trace_features.csv'}'.")

        if group_by:
            grouped = aggregate_groups(frame, group_by)
            id_columns = list(group_by) + ["trace_count"] + (["label"] if "label" in grouped.columns else [])
            group_features = normalize_frame(grouped, id_columns)
            group_features.to_csv(out / "group_features.csv", index=False)
            print(f"Saved {len(group_features)} group feature rows to '{out / 'group_features.csv'}'.")

    print("--- Done ---")
    return traces, result, vocabulary


def main():
    parser = argparse.ArgumentParser(description="Compact syscall traces, mine frequent sequences and build embedding features.")
    parser.add_argument("--corpus", type=str, required=True, help="Path to the trace corpus (.json/.csv/.parquet).")
    parser.add_argument("--output-dir", type=str, default="trace_abstraction_out", help="Directory for all outputs.")
    parser.add_argument("--case-support", type=float, default=0.05, help="Case-support threshold in (0, 1].")
    parser.add_argument("--total-support", type=float, default=0.05, help="Total-support threshold in (0, 1].")
    parser.add_argument("--max-length", type=int, default=2, help="Maximum mined sequence length.")
    parser.add_argument("--workers", type=int, default=1, help="Number of worker processes.")
    parser.add_argument("--embeddings-file", type=str, default=None, help="Token embedding JSON ({token: [floats]}).")
    parser.add_argument("--group-by", nargs='+', default=[], help="Trace attributes to aggregate features by (e.g. device window).")
    parser.add_argument("--checkpoint-every", type=int, default=0, help="Checkpoint compaction every K rules (0 = off).")
    parser.add_argument("--marker-literals", nargs='+', default=list(DEFAULT_MARKER_LITERALS),
                        help="Tokens that exclude a mined pair from substitution.")
    args = parser.parse_args()

    config = MinerConfig(
        case_support=args.case_support,
        total_support=args.total_support,
        max_length=args.max_length,
        workers=args.workers,
    )
    try:
        run_pipeline(
            args.corpus,
            args.output_dir,
            config,
            embeddings_file=args.embeddings_file,
            group_by=args.group_by,
            checkpoint_every=args.checkpoint_every,
            marker_literals=args.marker_literals,
        )
    except (PreconditionError, WorkerFailure) as e:
        print(f"FATAL ERROR: {e}")
        raise SystemExit(1)


if __name__ == '__main__':
    main()
