from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from stagegate.config import TimeoutsConfig
from stagegate.models import Stage, TimeoutResolution

if TYPE_CHECKING:
    from stagegate.decisions import Decider

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TimeoutEvent:
    execution_id: str
    stage: Stage
    attempt: int
    occurrence: int
    elapsed: float
    limit: float

    def to_dict(self) -> dict[str, object]:
        return {
            "execution_id": self.execution_id,
            "stage": self.stage.value,
            "attempt": self.attempt,
            "occurrence": self.occurrence,
            "elapsed_seconds": round(self.elapsed, 3),
            "limit_seconds": self.limit,
        }


class TimeoutMonitor:
    """Per-stage deadlines and the repeated-timeout rule.

    Counts are kept per (execution, stage). Once a stage has timed out
    ``auto_save_after`` times, further timeouts resolve to save-and-stop
    without asking.
    """

    def __init__(self, config: TimeoutsConfig | None = None) -> None:
        self.config = config or TimeoutsConfig()
        self._counts: dict[tuple[str, Stage], int] = {}
        self._elapsed: dict[tuple[str, Stage], list[float]] = {}

    def timeout_for(self, stage: Stage) -> float:
        return float(getattr(self.config, stage.value))

    def extension_for(self, stage: Stage) -> float:
        return self.timeout_for(stage) * self.config.extension_factor

    def count(self, execution_id: str, stage: Stage) -> int:
        return self._counts.get((execution_id, stage), 0)

    def observe(self, execution_id: str, stage: Stage, elapsed: float) -> None:
        self._elapsed.setdefault((execution_id, stage), []).append(elapsed)

    def elapsed(self, execution_id: str, stage: Stage) -> list[float]:
        return list(self._elapsed.get((execution_id, stage), []))

    def record_timeout(
        self, execution_id: str, stage: Stage, attempt: int, elapsed: float
    ) -> TimeoutEvent:
        key = (execution_id, stage)
        self._counts[key] = self._counts.get(key, 0) + 1
        return TimeoutEvent(
            execution_id=execution_id,
            stage=stage,
            attempt=attempt,
            occurrence=self._counts[key],
            elapsed=elapsed,
            limit=self.timeout_for(stage),
        )

    def resolve(self, event: TimeoutEvent, decider: Decider) -> TimeoutResolution:
        if event.occurrence > self.config.auto_save_after:
            logger.warning(
                "%s timed out %d times in %s; applying save_and_stop",
                event.stage.value,
                event.occurrence,
                event.execution_id,
            )
            return TimeoutResolution.SAVE_AND_STOP
        resolution = TimeoutResolution(decider.resolve_timeout(event))
        logger.info(
            "%s timeout #%d resolved as %s", event.stage.value, event.occurrence, resolution.value
        )
        return resolution

    def forget(self, execution_id: str) -> None:
        for key in [key for key in self._counts if key[0] == execution_id]:
            del self._counts[key]
        for key in [key for key in self._elapsed if key[0] == execution_id]:
            del self._elapsed[key]
