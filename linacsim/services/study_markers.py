"""Scenario start/end markers handed to the study-capture layer."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from linacsim.core.models import ScenarioMarkers

logger = structlog.get_logger(__name__)

MarkerCallback = Callable[[ScenarioMarkers], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StudyMarkers:
    """
    Idempotent lifecycle markers for one scenario attempt.

    The first ``mark_start``/``mark_end`` records a timestamp; later calls keep
    it unless ``force`` is set. Ending without a start backfills the start
    with the end timestamp so task duration stays defined.
    """

    def __init__(
        self,
        scenario_id: str,
        on_start: Optional[MarkerCallback] = None,
        on_end: Optional[MarkerCallback] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.markers = ScenarioMarkers(scenario_id=scenario_id)
        self.on_start = on_start
        self.on_end = on_end
        self._clock = clock

    @property
    def started(self) -> bool:
        return self.markers.started_at is not None

    @property
    def ended(self) -> bool:
        return self.markers.ended_at is not None

    def mark_start(self, force: bool = False) -> ScenarioMarkers:
        if self.markers.started_at is None or force:
            self.markers.started_at = self._clock()
            self.markers.start_backfilled = False
            logger.info(
                "Scenario start",
                scenario_id=self.markers.scenario_id,
                started_at=self.markers.started_at.isoformat(),
                forced=force,
            )
        self._notify(self.on_start)
        return self.markers

    def mark_end(self, force: bool = False) -> ScenarioMarkers:
        if self.markers.ended_at is None or force:
            self.markers.ended_at = self._clock()
            if self.markers.started_at is None:
                self.markers.started_at = self.markers.ended_at
                self.markers.start_backfilled = True
                logger.warning(
                    "Scenario ended without a start marker; backfilled",
                    scenario_id=self.markers.scenario_id,
                )
            logger.info(
                "Scenario end",
                scenario_id=self.markers.scenario_id,
                ended_at=self.markers.ended_at.isoformat(),
                console_task_seconds=self.markers.console_task_seconds,
                forced=force,
            )
        self._notify(self.on_end)
        return self.markers

    def _notify(self, callback: Optional[MarkerCallback]) -> None:
        if callback is None:
            return
        try:
            callback(self.markers.model_copy())
        except Exception as e:
            logger.error("Study marker callback failed", error=str(e))
