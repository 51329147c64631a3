"""
Geometry and delivery simulation for the treatment console.

Animates monitor-unit accumulation and gantry arc rotation for one field at a
time. Progress lives in a ``DeliveryProgress`` map owned by the simulator; the
scenario's field records are never touched.
"""

from __future__ import annotations

import asyncio
import math
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from linacsim.core.config import SimulationConfig
from linacsim.core.exceptions import DeliveryInProgressError
from linacsim.core.models import (
    ArcDirection,
    DeliveryProgress,
    GantryPlan,
    TreatmentField,
    coerce_float,
)

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, float, Optional[float]], None]
SleepFunc = Callable[[float], Awaitable[Any]]

_NUMBER_PREFIX = re.compile(r"\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)")


# Gantry geometry


def normalize_deg(d: Any) -> float:
    """Map an angle into [0, 360); non-numeric input maps to 0."""
    n = coerce_float(d)
    r = math.fmod(n, 360.0)
    if r < 0:
        r += 360.0
    # fmod of a tiny negative can round up to exactly 360
    return 0.0 if r >= 360.0 else r


def parse_gantry_plan(spec: Any) -> GantryPlan:
    """
    Parse a gantry specification.

    A number is a static angle. A string ``"A-B"`` is an arc from A to B.
    Empty or unparseable specifications fall back to a static angle of 0.
    """
    if isinstance(spec, (int, float)) and not isinstance(spec, bool):
        a = normalize_deg(spec)
        return GantryPlan(is_arc=False, start_deg=a, end_deg=a, raw=spec)

    s = str(spec if spec is not None else "").strip()
    if not s:
        return GantryPlan(is_arc=False, start_deg=0.0, end_deg=0.0, raw=spec)

    # A leading minus is a sign, not an arc separator
    head, sep, tail = s[1:].partition("-") if s.startswith("-") else s.partition("-")
    if sep:
        start_txt = ("-" + head) if s.startswith("-") else head
        start = normalize_deg(_leading_number(start_txt))
        end = normalize_deg(_leading_number(tail))
        return GantryPlan(is_arc=True, start_deg=start, end_deg=end, raw=s)

    a = normalize_deg(_leading_number(s))
    return GantryPlan(is_arc=False, start_deg=a, end_deg=a, raw=s)


def _leading_number(text: str) -> float:
    """Parse the numeric prefix of ``text`` ("180 deg" -> 180), 0 when absent."""
    m = _NUMBER_PREFIX.match(text)
    return coerce_float(m.group(0)) if m else 0.0


def infer_arc_direction(field_name: str) -> ArcDirection:
    """CCW when the field name says so, otherwise clockwise."""
    name = str(field_name or "").upper()
    if "CCW" in name:
        return ArcDirection.CCW
    return ArcDirection.CW


def cw_distance(start_deg: float, end_deg: float) -> float:
    """Clockwise (decreasing angle) travel from start to end."""
    return (start_deg - end_deg) % 360.0


def ccw_distance(start_deg: float, end_deg: float) -> float:
    """Counter-clockwise (increasing angle) travel from start to end."""
    return (end_deg - start_deg) % 360.0


def choose_arc(
    start_deg: float,
    end_deg: float,
    direction: ArcDirection,
    flip_threshold_deg: float = 5.0,
) -> Tuple[ArcDirection, float]:
    """
    Pick the traversal direction and distance for an arc.

    Nearly-equal endpoints ("180-179") denote an almost-full rotation, so a
    preferred-direction travel at or below the threshold flips to the other
    direction, whose distance is the complement.
    """
    dist = ccw_distance(start_deg, end_deg) if direction is ArcDirection.CCW else cw_distance(
        start_deg, end_deg
    )
    if dist <= flip_threshold_deg:
        direction = ArcDirection.CW if direction is ArcDirection.CCW else ArcDirection.CCW
        dist = 360.0 - dist
    return direction, dist


def arc_angle_at(
    start_deg: float,
    end_deg: float,
    direction: ArcDirection,
    progress: float,
    flip_threshold_deg: float = 5.0,
) -> float:
    """Interpolated gantry angle at ``progress`` in [0, 1]."""
    p = min(1.0, max(0.0, coerce_float(progress)))
    chosen, dist = choose_arc(start_deg, end_deg, direction, flip_threshold_deg)
    delta = dist * p
    raw = start_deg + delta if chosen is ArcDirection.CCW else start_deg - delta
    return normalize_deg(raw)


# Timing


def delivery_seconds(monitor_units: float, dose_rate: float, config: SimulationConfig) -> float:
    """Wall-clock animation length for a field, clamped to the configured window."""
    if monitor_units <= 0:
        return 0.0
    rate = dose_rate if dose_rate > 0 else config.default_dose_rate
    clinical = (monitor_units / rate) * 60.0
    return min(config.max_seconds, max(config.min_seconds, clinical))


def step_count(seconds: float, config: SimulationConfig) -> int:
    return max(config.min_steps, int(math.floor(seconds * config.steps_per_second)))


def delivered_mu_at(plan_mu: float, progress: float) -> float:
    """MU delivered at ``progress``; exactly the plan total at completion."""
    p = min(1.0, max(0.0, coerce_float(progress)))
    if p >= 1.0:
        return plan_mu
    return plan_mu * p


def progress_at(
    field: TreatmentField, progress: float, flip_threshold_deg: float = 5.0
) -> DeliveryProgress:
    """Snapshot of a field at ``progress`` in [0, 1] of its delivery."""
    p = min(1.0, max(0.0, coerce_float(progress)))
    plan = parse_gantry_plan(field.gantry_angle)
    gantry = plan.start_deg
    if plan.is_arc:
        gantry = arc_angle_at(
            plan.start_deg,
            plan.end_deg,
            infer_arc_direction(field.name),
            p,
            flip_threshold_deg,
        )
    return DeliveryProgress(
        delivered_mu=delivered_mu_at(field.monitor_units, p),
        done=p >= 1.0,
        current_gantry_deg=gantry,
    )


def is_deliverable(field: TreatmentField) -> bool:
    """True for fields that go through the timed MU animation."""
    return not field.is_imaging and field.monitor_units > 0


class DeliverySimulator:
    """
    Owns per-field delivery progress and runs one delivery at a time.

    Each animation step awaits ``sleep`` so the event loop can process sync
    messages and redraws between samples.
    """

    def __init__(
        self,
        fields: Sequence[TreatmentField],
        config: SimulationConfig,
        on_progress: Optional[ProgressCallback] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.fields = list(fields)
        self.config = config
        self.on_progress = on_progress
        self._sleep = sleep
        self.progress: Dict[int, DeliveryProgress] = {
            i: DeliveryProgress() for i in range(len(self.fields))
        }
        self.running_index: Optional[int] = None

    @property
    def is_delivering(self) -> bool:
        return self.running_index is not None

    def plan_for(self, index: int) -> GantryPlan:
        return parse_gantry_plan(self.fields[index].gantry_angle)

    def direction_for(self, index: int) -> ArcDirection:
        return infer_arc_direction(self.fields[index].name)

    def gantry_at(self, index: int, progress: float) -> float:
        """Gantry angle of field ``index`` at ``progress``; static fields hold their start."""
        return progress_at(
            self.fields[index], progress, self.config.arc_flip_threshold_deg
        ).current_gantry_deg

    def sample(self, index: int, progress: float) -> DeliveryProgress:
        """Apply one progress sample to field ``index``; delivered MU never decreases."""
        field = self.fields[index]
        state = self.progress[index]
        if state.done:
            return state

        snapshot = progress_at(field, progress, self.config.arc_flip_threshold_deg)
        state.delivered_mu = max(state.delivered_mu, snapshot.delivered_mu)
        state.current_gantry_deg = snapshot.current_gantry_deg
        self._emit(index, state)
        return state

    def _emit(self, index: int, state: DeliveryProgress) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(index, state.delivered_mu, state.current_gantry_deg)
        except Exception as e:
            logger.error("Delivery progress callback failed", field_index=index, error=str(e))

    def _finish(self, index: int) -> DeliveryProgress:
        field = self.fields[index]
        state = self.progress[index]
        state.delivered_mu = field.monitor_units
        state.current_gantry_deg = self.gantry_at(index, 1.0)
        state.done = True
        self._emit(index, state)
        return state

    async def deliver(self, index: int) -> DeliveryProgress:
        """
        Deliver field ``index`` to completion.

        Imaging and zero-MU fields complete instantly. A field already done is
        returned unchanged.

        Raises:
            DeliveryInProgressError: When another delivery is still running
        """
        if self.running_index is not None:
            raise DeliveryInProgressError(self.running_index)

        state = self.progress[index]
        if state.done:
            logger.debug("Field already delivered", field_index=index)
            return state

        field = self.fields[index]
        self.running_index = index
        try:
            if not is_deliverable(field):
                logger.info("Field completes instantly", field_index=index, field=field.name)
                return self._finish(index)

            seconds = delivery_seconds(field.monitor_units, field.dose_rate, self.config)
            steps = step_count(seconds, self.config)
            step_delay = seconds / steps
            # Resume from an interrupted run without stepping MU backwards
            start_step = int(math.floor((state.delivered_mu / field.monitor_units) * steps))

            logger.info(
                "Beam on",
                field_index=index,
                field=field.name,
                mu=field.monitor_units,
                seconds=round(seconds, 2),
                steps=steps,
            )

            for s in range(start_step, steps + 1):
                self.sample(index, s / steps)
                await self._sleep(step_delay)

            self._finish(index)
            logger.info("Field delivered", field_index=index, mu=state.delivered_mu)
            return state
        finally:
            self.running_index = None

    def remaining(self) -> List[int]:
        """Indices of fields not yet done, in plan order."""
        return [i for i, p in self.progress.items() if not p.done]

    async def deliver_all(self, indices: Optional[Sequence[int]] = None) -> List[int]:
        """Deliver fields sequentially with a short settle pause between them."""
        delivered = []
        for i in list(indices) if indices is not None else self.remaining():
            if self.progress[i].done:
                continue
            await self.deliver(i)
            delivered.append(i)
            await self._sleep(self.config.field_settle_seconds)
        return delivered
