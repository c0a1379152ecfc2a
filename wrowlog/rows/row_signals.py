import logging
import time

from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _now() -> float:
    return time.time()


@dataclass(frozen=True)
class RowSignal:
    timestamp: float = field(default_factory=_now, kw_only=True)


@dataclass(frozen=True)
class LineReceived(RowSignal):
    raw: bytes


@dataclass(frozen=True)
class DistancePollDue(RowSignal):
    pass


@dataclass(frozen=True)
class RecordTick(RowSignal):
    pass


@dataclass(frozen=True)
class HeartRateMeasured(RowSignal):
    bpm: int


@dataclass(frozen=True)
class ShutdownRequested(RowSignal):
    reason: str = "requested"
