"""
Data models and type definitions for the LINAC study emulator.

Scenario input and the replicated shared state are pydantic models so that
malformed JSON is coerced once at the boundary. Per-session simulation state
is kept in plain dataclasses owned by the services that mutate it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def coerce_float(v: Any, default: float = 0.0) -> float:
    """Return ``v`` as a finite float, or ``default`` when it is not numeric."""
    try:
        n = float(v)
    except (TypeError, ValueError):
        return default
    return n if math.isfinite(n) else default


class WorkflowStage(str, Enum):
    """Stages of the console treatment workflow."""

    PREVIEW = "preview"
    PREPARE = "prepare"
    READY = "ready"
    BEAM_ON = "beam_on"
    RECORD = "record"


class Technique(str, Enum):
    """Delivery technique classifier."""

    STATIC = "STATIC"
    CRT_3D = "3DCRT"
    IMRT = "IMRT"
    VMAT = "VMAT"

    @classmethod
    def classify(cls, raw: Any) -> "Technique":
        t = str(raw or "").upper()
        if "VMAT" in t:
            return cls.VMAT
        if "IMRT" in t:
            return cls.IMRT
        if "3D" in t:
            return cls.CRT_3D
        return cls.STATIC


class ArcDirection(str, Enum):
    """Gantry rotation direction; clockwise means decreasing angle."""

    CW = "cw"
    CCW = "ccw"


# Scenario input


class Jaws(BaseModel):
    """Jaw aperture bounds in centimeters."""

    x1: float = Field(default=0.0, validation_alias=AliasChoices("X1", "x1"))
    x2: float = Field(default=0.0, validation_alias=AliasChoices("X2", "x2"))
    y1: float = Field(default=0.0, validation_alias=AliasChoices("Y1", "y1"))
    y2: float = Field(default=0.0, validation_alias=AliasChoices("Y2", "y2"))

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("x1", "x2", "y1", "y2", mode="before")
    @classmethod
    def parse_number(cls, v):
        return coerce_float(v)


class CouchCoordinates(BaseModel):
    """Planned couch position in centimeters."""

    vertical: float = 0.0
    lateral: float = 0.0
    longitudinal: float = 0.0

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("vertical", "lateral", "longitudinal", mode="before")
    @classmethod
    def parse_number(cls, v):
        return coerce_float(v)


class TreatmentField(BaseModel):
    """One treatment (or imaging) field of a plan."""

    name: str = Field(default="", validation_alias=AliasChoices("fieldName", "name"))
    technique: Technique = Field(default=Technique.STATIC)
    monitor_units: float = Field(
        default=0.0, validation_alias=AliasChoices("monitorUnits", "monitor_units", "mu")
    )
    dose_rate: float = Field(
        default=600.0, validation_alias=AliasChoices("doseRate", "dose_rate")
    )
    gantry_angle: Optional[Union[float, str]] = Field(
        default=None, validation_alias=AliasChoices("gantryAngle", "gantry_angle")
    )
    collimator_angle: float = Field(
        default=0.0, validation_alias=AliasChoices("collimatorAngle", "collimator_angle")
    )
    couch_angle: float = Field(
        default=0.0, validation_alias=AliasChoices("couchAngle", "couch_angle")
    )
    pitch_angle: float = Field(
        default=0.0, validation_alias=AliasChoices("pitchAngle", "pitch_angle")
    )
    roll_angle: float = Field(
        default=0.0, validation_alias=AliasChoices("rollAngle", "roll_angle")
    )
    jaws: Jaws = Field(
        default_factory=Jaws, validation_alias=AliasChoices("jawPositions_cm", "jaws")
    )
    couch_coordinates: CouchCoordinates = Field(
        default_factory=CouchCoordinates,
        validation_alias=AliasChoices("couchCoordinates_cm", "couch_coordinates"),
    )
    wedge: Optional[str] = Field(default=None, validation_alias=AliasChoices("wedgeInfo", "wedge"))
    bolus: Optional[str] = Field(default=None, validation_alias=AliasChoices("bolusInfo", "bolus"))
    is_imaging: bool = Field(default=False, validation_alias=AliasChoices("isImaging", "is_imaging"))
    active: bool = True

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("technique", mode="before")
    @classmethod
    def classify_technique(cls, v):
        return Technique.classify(v)

    @field_validator("monitor_units", mode="before")
    @classmethod
    def parse_mu(cls, v):
        return max(0.0, coerce_float(v))

    @field_validator("dose_rate", mode="before")
    @classmethod
    def parse_dose_rate(cls, v):
        n = coerce_float(v, default=600.0)
        return n if n > 0 else 600.0

    @field_validator(
        "collimator_angle", "couch_angle", "pitch_angle", "roll_angle", mode="before"
    )
    @classmethod
    def parse_angle(cls, v):
        return coerce_float(v)

    @field_validator("gantry_angle", mode="before")
    @classmethod
    def parse_gantry(cls, v):
        if v is None or isinstance(v, (int, float)):
            return v
        return str(v).strip()

    @field_validator("wedge", "bolus", mode="before")
    @classmethod
    def parse_accessory(cls, v):
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @property
    def beam_type_label(self) -> str:
        if self.technique is Technique.VMAT:
            return "ARC (VMAT)"
        if self.technique is Technique.IMRT:
            return "IMRT"
        if self.technique is Technique.CRT_3D:
            return "STATIC (3DCRT)"
        return "STATIC (Static Photon)"

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "TreatmentField":
        """Build a field from scenario JSON, folding the imaging hints into ``is_imaging``."""
        data = dict(raw)
        kind = str(data.get("type") or "").lower()
        if "imaging" in kind or data.get("imagingModality"):
            data["isImaging"] = True
        return cls.model_validate(data)


class ScenarioRecord(BaseModel):
    """A training scenario: patient/plan metadata and ordered treatment fields."""

    scenario_id: str
    source: str = ""
    patient_name: Optional[str] = None
    plan_name: Optional[str] = None
    imaging_type: Optional[str] = None
    imaging_notes: Optional[str] = None
    drr_image: Optional[str] = None
    overlay_image: Optional[str] = None
    error_present: Optional[bool] = None
    fields: List[TreatmentField] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


# Replicated shared state


class CouchShift(BaseModel):
    """Operator-applied couch correction (cm for translations, degrees for pitch)."""

    vertical: float = 0.0
    lateral: float = 0.0
    longitudinal: float = 0.0
    pitch: float = 0.0

    model_config = ConfigDict(extra="ignore")

    @field_validator("vertical", "lateral", "longitudinal", "pitch", mode="before")
    @classmethod
    def parse_number(cls, v):
        return coerce_float(v)


class SharedScenarioState(BaseModel):
    """The unit of replication between the console and imaging displays."""

    scenario_id: str = Field(default="", alias="scenarioId")
    couch_shift: CouchShift = Field(default_factory=CouchShift, alias="couchShift")
    applied_at_timestamp: Optional[str] = Field(default=None, alias="appliedAtTimestamp")

    # Unknown keys written by another display implementation survive a round-trip
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("couch_shift", mode="before")
    @classmethod
    def parse_couch_shift(cls, v):
        return v if isinstance(v, (dict, CouchShift)) else {}

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys both displays agree on."""
        return self.model_dump(by_alias=True, mode="json")


class SeedOffset(BaseModel):
    """Deterministic initial image misalignment for a scenario."""

    translate_x: float
    translate_y: float
    rotate_deg: float
    scale: float

    model_config = ConfigDict(frozen=True)


class ScenarioMarkers(BaseModel):
    """Study lifecycle timestamps for one scenario attempt."""

    scenario_id: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    start_backfilled: bool = False

    @property
    def console_task_seconds(self) -> Optional[int]:
        if self.started_at is None or self.ended_at is None:
            return None
        if self.ended_at < self.started_at:
            return None
        return round((self.ended_at - self.started_at).total_seconds())


# Per-session simulation state


@dataclass
class DeliveryProgress:
    """Console-local progress of one field; ``done`` never reverts within a session."""

    delivered_mu: float = 0.0
    done: bool = False
    current_gantry_deg: Optional[float] = None


@dataclass(frozen=True)
class GantryPlan:
    """Parsed gantry specification; non-arc fields have ``start_deg == end_deg``."""

    is_arc: bool
    start_deg: float
    end_deg: float
    raw: Any = None


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a workflow action; refusals carry a user-visible message."""

    ok: bool
    stage: WorkflowStage
    message: str = ""
