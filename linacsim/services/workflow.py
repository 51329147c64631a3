"""
Treatment workflow state machine for the console display.

Preview -> Prepare -> Ready -> Beam On -> Record. Every operator action
returns a ``TransitionResult``; refused actions leave the state untouched and
carry the status line shown to the operator.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Mapping, Optional, Sequence

import structlog

from linacsim.core.models import DeliveryProgress, TransitionResult, TreatmentField, WorkflowStage
from linacsim.services.study_markers import StudyMarkers

logger = structlog.get_logger(__name__)

DEFAULT_CHECKLIST = (
    "Patient ID verified",
    "Plan & treatment site confirmed",
    "Immobilization / indexing correct",
    "Machine clearance visually verified",
    "Therapist alerts reviewed",
)

STAGE_MESSAGES = {
    WorkflowStage.PREVIEW: "To begin, click Prepare.",
    WorkflowStage.PREPARE: "Complete verification checklist.",
    WorkflowStage.READY: "Ready. Review parameters, then click Beam On.",
    WorkflowStage.BEAM_ON: "Treatment in progress...",
    WorkflowStage.RECORD: "Treatment complete. Click Record to answer study questions.",
}


class WorkflowStateMachine:
    """Gated operator workflow for one scenario attempt on the console."""

    def __init__(
        self,
        fields: Sequence[TreatmentField],
        progress: Mapping[int, DeliveryProgress],
        markers: StudyMarkers,
        on_field_selected: Optional[Callable[[int], None]] = None,
        on_record: Optional[Callable[[], None]] = None,
        checklist_items: Sequence[str] = DEFAULT_CHECKLIST,
    ):
        self.fields = list(fields)
        self.progress = progress
        self.markers = markers
        self.on_field_selected = on_field_selected
        self.on_record = on_record
        self.checklist_items = list(checklist_items)

        self.stage = WorkflowStage.PREVIEW
        self.active: List[bool] = [f.active for f in self.fields]
        self.selected_index: Optional[int] = next((i for i, a in enumerate(self.active) if a), None)
        self.checklist: Optional[List[bool]] = None
        self.override_reasons: List[str] = []
        self.status_message = STAGE_MESSAGES[self.stage]
        self._stage_before_prepare = WorkflowStage.PREVIEW

    # Helpers

    def _move(self, stage: WorkflowStage, message: Optional[str] = None) -> TransitionResult:
        previous = self.stage
        self.stage = stage
        self.status_message = message or STAGE_MESSAGES[stage]
        logger.info("Workflow stage", previous=previous.value, stage=stage.value)
        return TransitionResult(ok=True, stage=stage, message=self.status_message)

    def _refuse(self, message: str) -> TransitionResult:
        self.status_message = message
        logger.info("Workflow action refused", stage=self.stage.value, reason=message)
        return TransitionResult(ok=False, stage=self.stage, message=message)

    def _is_done(self, index: int) -> bool:
        p = self.progress.get(index)
        return bool(p and p.done)

    def requires_delivery(self, index: int) -> bool:
        return self.active[index] and not self.fields[index].is_imaging

    def pending_fields(self) -> List[int]:
        """Active treatment fields not yet delivered, in plan order."""
        return [
            i for i in range(len(self.fields)) if self.requires_delivery(i) and not self._is_done(i)
        ]

    @property
    def all_delivered(self) -> bool:
        # Vacuously true for a scenario with nothing to deliver
        return not self.pending_fields()

    @property
    def override_required(self) -> bool:
        return bool(self.override_reasons)

    @property
    def can_confirm(self) -> bool:
        return self.checklist is not None and all(self.checklist)

    def controls(self) -> Dict[str, bool]:
        """Which console buttons are enabled in the current stage."""
        delivering = self.stage is WorkflowStage.BEAM_ON
        return {
            "prepare": self.stage in (WorkflowStage.PREVIEW, WorkflowStage.READY),
            "confirm": self.can_confirm,
            "ready": self.stage is WorkflowStage.READY,
            "beam_on": not delivering and self.beam_on_refusal() is None,
            "record": not delivering and self.all_delivered and self.stage is not WorkflowStage.PREPARE,
            "override": self.override_required,
        }

    # Field selection

    def select_field(self, index: int) -> TransitionResult:
        if self.stage is WorkflowStage.BEAM_ON:
            return self._refuse("Cannot change fields while the beam is on.")
        if not 0 <= index < len(self.fields):
            return self._refuse(f"No field {index + 1} in this plan.")
        if not self.active[index]:
            return self._refuse(f"Field {self.fields[index].name or index + 1} is deactivated.")

        self.selected_index = index
        if self.on_field_selected is not None:
            try:
                self.on_field_selected(index)
            except Exception as e:
                logger.error("Field selection callback failed", field_index=index, error=str(e))
        return TransitionResult(ok=True, stage=self.stage, message=self.status_message)

    def set_field_active(self, index: int, active: bool) -> TransitionResult:
        """Activate or deactivate a field; deactivating the selection moves it on."""
        if self.stage is WorkflowStage.BEAM_ON:
            return self._refuse("Cannot change fields while the beam is on.")
        if not 0 <= index < len(self.fields):
            return self._refuse(f"No field {index + 1} in this plan.")

        self.active[index] = active
        if not active and index == self.selected_index:
            nxt = next((i for i, a in enumerate(self.active) if a), None)
            self.selected_index = nxt
            if nxt is not None:
                self.select_field(nxt)
        elif active and self.selected_index is None:
            self.select_field(index)

        if self.stage is WorkflowStage.RECORD and not self.all_delivered:
            return self._move(WorkflowStage.READY)
        if self.stage is WorkflowStage.READY and self.all_delivered:
            return self._move(WorkflowStage.RECORD)
        return TransitionResult(ok=True, stage=self.stage, message=self.status_message)

    # Prepare / checklist

    def prepare(self) -> TransitionResult:
        if self.stage not in (WorkflowStage.PREVIEW, WorkflowStage.READY):
            return self._refuse(f"Prepare is not available during {self.stage.value}.")
        self._stage_before_prepare = self.stage
        self.checklist = [False] * len(self.checklist_items)
        return self._move(WorkflowStage.PREPARE)

    def check_item(self, index: int, checked: bool = True) -> TransitionResult:
        if self.stage is not WorkflowStage.PREPARE or self.checklist is None:
            return self._refuse("The verification checklist is not open.")
        if not 0 <= index < len(self.checklist):
            return self._refuse(f"No checklist item {index + 1}.")
        self.checklist[index] = checked
        return TransitionResult(ok=True, stage=self.stage, message=self.status_message)

    def confirm_prepare(self) -> TransitionResult:
        if self.stage is not WorkflowStage.PREPARE:
            return self._refuse("The verification checklist is not open.")
        if not self.can_confirm:
            return self._refuse("Check every verification item before confirming.")

        self.checklist = None
        self.markers.mark_start()
        if self.all_delivered:
            return self._move(WorkflowStage.RECORD)
        return self._move(WorkflowStage.READY)

    def cancel_prepare(self) -> TransitionResult:
        if self.stage is not WorkflowStage.PREPARE:
            return self._refuse("The verification checklist is not open.")
        self.checklist = None
        self.stage = self._stage_before_prepare
        self.status_message = STAGE_MESSAGES[self.stage]
        return TransitionResult(ok=True, stage=self.stage, message=self.status_message)

    def ready(self) -> TransitionResult:
        if self.stage is WorkflowStage.READY:
            return self._move(WorkflowStage.READY)
        if self.stage in (WorkflowStage.PREVIEW, WorkflowStage.PREPARE):
            return self._refuse("Complete the verification checklist first.")
        return self._refuse(f"Ready is not available during {self.stage.value}.")

    # Tolerance override

    def flag_out_of_tolerance(self, reasons: Sequence[str]) -> None:
        """Record out-of-tolerance parameters reported by the geometry check."""
        self.override_reasons = list(reasons)
        if self.override_reasons:
            logger.warning("Override required", parameters=self.override_reasons)

    def acknowledge_override(self) -> TransitionResult:
        if not self.override_required:
            return self._refuse("No override is pending.")
        logger.info("Override acknowledged", parameters=self.override_reasons)
        self.override_reasons = []
        return TransitionResult(ok=True, stage=self.stage, message=self.status_message)

    # Beam on / delivery

    def beam_on_refusal(self) -> Optional[str]:
        """Why Beam On is not allowed right now, or None when it is."""
        if self.stage is WorkflowStage.BEAM_ON:
            return "Treatment in progress..."
        if self.stage is not WorkflowStage.READY:
            return "Complete Prepare and the verification checklist before Beam On."
        i = self.selected_index
        if i is None:
            return "No field selected."
        field = self.fields[i]
        label = field.name or f"Field {i + 1}"
        if not self.active[i]:
            return f"{label} is deactivated."
        if field.is_imaging:
            return f"{label} is an imaging field."
        if self._is_done(i):
            return f"{label} has already been delivered."
        if self.override_required:
            return "Override required: " + ", ".join(self.override_reasons)
        return None

    def begin_beam_on(self) -> TransitionResult:
        reason = self.beam_on_refusal()
        if reason is not None:
            return self._refuse(reason)
        return self._move(WorkflowStage.BEAM_ON)

    def complete_field(self) -> TransitionResult:
        """Leave Beam On after the current field's delivery loop has exited."""
        if self.stage is not WorkflowStage.BEAM_ON:
            return self._refuse("No delivery is in progress.")
        pending = self.pending_fields()
        if not pending:
            return self._move(WorkflowStage.RECORD)
        result = self._move(WorkflowStage.READY)
        if self.selected_index not in pending:
            self.select_field(pending[0])
        return result

    # Record

    def record(self) -> TransitionResult:
        if self.stage is WorkflowStage.BEAM_ON:
            return self._refuse("Treatment in progress...")
        if self.stage is WorkflowStage.PREPARE:
            return self._refuse("Close the verification checklist first.")
        if not self.all_delivered:
            return self._refuse("Complete all fields before recording.")

        self.markers.mark_end()
        result = self._move(
            WorkflowStage.RECORD, "Study questions opened. When finished, export CSV."
        )
        if self.on_record is not None:
            try:
                self.on_record()
            except Exception as e:
                logger.error("Record hand-off failed", error=str(e))
        return result
