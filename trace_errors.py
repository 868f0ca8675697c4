"""
Exception types shared by the compactor, the miner and the embedding aggregator.
"""


class PreconditionError(ValueError):
    """잘못된 설정/입력. 어떤 작업도 시작하기 전에 발생합니다."""


class WorkerFailure(RuntimeError):
    """샤드 하나라도 실패하면 해당 레벨(배치) 전체를 중단합니다."""

    def __init__(self, phase: str, shard_index: int, cause: BaseException):
        self.phase = phase
        self.shard_index = shard_index
        self.cause = cause
        super().__init__(f"{phase}: shard {shard_index} failed ({type(cause).__name__}: {cause})")


class DataConsistencyWarning(UserWarning):
    """Trace tokens missing from the embedding table were skipped."""
