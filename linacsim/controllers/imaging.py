"""
Imaging display controller (second monitor).

Shows the planning DRR with the on-board kV image overlaid. The overlay starts
with the scenario's seeded misalignment; the operator nudges couch shifts
locally and commits them with Apply, which replicates to the console.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from linacsim.core.models import CouchShift, ScenarioRecord, SeedOffset, SharedScenarioState
from linacsim.data.shared_state import SharedStateChannel
from linacsim.services.seed import seed
from linacsim.services.study_markers import utc_now

logger = structlog.get_logger(__name__)

PX_PER_CM = 18.0
# LNG shares the vertical screen axis with VRT, damped so the two stay distinguishable
LNG_Y_WEIGHT = 0.6

AXIS_ALIASES = {
    "vrt": "vertical",
    "vertical": "vertical",
    "y": "vertical",
    "lat": "lateral",
    "lateral": "lateral",
    "x": "lateral",
    "lng": "longitudinal",
    "longitudinal": "longitudinal",
    "z": "longitudinal",
    "pitch": "pitch",
}


def resolve_axis(axis: str) -> str:
    try:
        return AXIS_ALIASES[str(axis).strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown couch axis: {axis!r}") from None


def describe_shift(shift: CouchShift) -> str:
    return (
        f"VRT={shift.vertical:.1f}, LAT={shift.lateral:.1f}, "
        f"LNG={shift.longitudinal:.1f}, PITCH={shift.pitch:.1f}°"
    )


@dataclass(frozen=True)
class OverlayTransform:
    """Screen transform of the kV overlay relative to the DRR."""

    x: float
    y: float
    rotate_deg: float
    scale: float

    def css(self) -> str:
        return (
            f"translate({self.x:.1f}px, {self.y:.1f}px) "
            f"rotate({self.rotate_deg:.3f}deg) scale({self.scale:.4f})"
        )


def overlay_transform(base: SeedOffset, shift: CouchShift) -> OverlayTransform:
    """Compose the seeded misalignment with the couch shift."""
    return OverlayTransform(
        x=base.translate_x + shift.lateral * PX_PER_CM,
        y=base.translate_y + shift.vertical * PX_PER_CM + shift.longitudinal * PX_PER_CM * LNG_Y_WEIGHT,
        rotate_deg=base.rotate_deg + shift.pitch,
        scale=base.scale,
    )


class ImagingController:
    """Per-session state of the imaging display."""

    def __init__(
        self,
        scenario_id: str,
        channel: SharedStateChannel,
        scenario: Optional[ScenarioRecord] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.scenario_id = scenario_id
        self.scenario = scenario
        self.channel = channel
        self._clock = clock

        self.base = seed(scenario_id)
        self.shift = CouchShift()
        self.applied_at: Optional[str] = None
        self.status_message = ""

        initial = channel.read(scenario_id)
        if initial is not None:
            self._hydrate(initial)
        self._unsubscribe = channel.subscribe(scenario_id, self._on_shared_state)

        logger.info(
            "Imaging display ready",
            scenario_id=scenario_id,
            base_x=self.base.translate_x,
            base_y=self.base.translate_y,
        )

    def _hydrate(self, state: SharedScenarioState) -> None:
        self.shift = state.couch_shift.model_copy()
        self.applied_at = state.applied_at_timestamp

    def _on_shared_state(self, state: SharedScenarioState) -> None:
        self._hydrate(state)
        self.status_message = f"Shifts applied: {describe_shift(self.shift)}"

    def set_axis(self, axis: str, value: float) -> CouchShift:
        """Set one axis locally; nothing is shared until ``apply``."""
        name = resolve_axis(axis)
        self.shift = self.shift.model_copy(update={name: float(value)})
        return self.shift

    def nudge(self, axis: str, delta: float) -> CouchShift:
        """Step one axis by ``delta``, keeping one decimal like the input boxes."""
        name = resolve_axis(axis)
        return self.set_axis(name, round(getattr(self.shift, name) + float(delta), 1))

    def reset(self) -> CouchShift:
        self.shift = CouchShift()
        self.status_message = "Reset shifts (not applied)."
        return self.shift

    def apply(self) -> SharedScenarioState:
        """Commit the current shifts so the console's geometry reflects them."""
        applied_at = self._clock().isoformat()
        state = self.channel.write(
            self.scenario_id,
            {"couchShift": self.shift.model_dump(), "appliedAtTimestamp": applied_at},
            merge=True,
        )
        logger.info("Couch shifts applied", scenario_id=self.scenario_id, **self.shift.model_dump())
        return state

    def overlay_transform(self) -> OverlayTransform:
        return overlay_transform(self.base, self.shift)

    def close(self) -> None:
        self._unsubscribe()
