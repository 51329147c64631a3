"""Plan-versus-actual tolerance checks for the console geometry table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from linacsim.core.config import ToleranceConfig
from linacsim.core.models import CouchShift, TreatmentField
from linacsim.services.delivery import parse_gantry_plan


@dataclass(frozen=True)
class ToleranceViolation:
    """One parameter whose actual value is outside tolerance."""

    parameter: str
    kind: str
    planned: float
    actual: float
    tolerance: float

    @property
    def deviation(self) -> float:
        return abs(self.actual - self.planned)


def planned_geometry(field: TreatmentField) -> Dict[str, float]:
    """Planned scalar geometry for a field, keyed by parameter name."""
    values = {
        "collimator": field.collimator_angle,
        "couch_rotation": field.couch_angle,
        "jaw_x1": field.jaws.x1,
        "jaw_x2": field.jaws.x2,
        "jaw_y1": field.jaws.y1,
        "jaw_y2": field.jaws.y2,
        "couch_vertical": field.couch_coordinates.vertical,
        "couch_lateral": field.couch_coordinates.lateral,
        "couch_longitudinal": field.couch_coordinates.longitudinal,
        "couch_pitch": field.pitch_angle,
        "couch_roll": field.roll_angle,
    }
    # Arcs sweep through many angles; only static gantry angles are compared
    gantry = parse_gantry_plan(field.gantry_angle)
    if not gantry.is_arc:
        values["gantry"] = gantry.start_deg
    return values


def actual_geometry(field: TreatmentField, shift: Optional[CouchShift] = None) -> Dict[str, float]:
    """Machine geometry after the applied couch shift."""
    values = planned_geometry(field)
    if shift is not None:
        values["couch_vertical"] += shift.vertical
        values["couch_lateral"] += shift.lateral
        values["couch_longitudinal"] += shift.longitudinal
        values["couch_pitch"] += shift.pitch
    return values


_KIND = {
    "gantry": "angle",
    "collimator": "angle",
    "couch_rotation": "angle",
    "couch_pitch": "angle",
    "couch_roll": "angle",
}


def check_tolerances(
    planned: Dict[str, float],
    actual: Dict[str, float],
    config: ToleranceConfig,
) -> List[ToleranceViolation]:
    """Compare each planned parameter with its actual value."""
    limits = {"angle": config.angle, "position": config.position, "mu": config.mu}
    violations = []
    for name, plan_value in planned.items():
        if name not in actual:
            continue
        kind = "mu" if name == "mu" else _KIND.get(name, "position")
        limit = limits[kind]
        if abs(plan_value - actual[name]) > limit:
            violations.append(
                ToleranceViolation(
                    parameter=name,
                    kind=kind,
                    planned=plan_value,
                    actual=actual[name],
                    tolerance=limit,
                )
            )
    return violations
