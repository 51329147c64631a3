"""
Treatment console controller (chart screen).

Composition root for one console session: wires the scenario's fields into
the delivery simulator and workflow state machine, mirrors the couch shifts
applied on the imaging display, and exposes a render-ready snapshot.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from linacsim.core.config import Settings, get_settings
from linacsim.core.models import (
    CouchShift,
    ScenarioMarkers,
    ScenarioRecord,
    SharedScenarioState,
    TransitionResult,
    WorkflowStage,
)
from linacsim.data.shared_state import SharedStateChannel
from linacsim.services.delivery import DeliverySimulator, SleepFunc
from linacsim.services.study_markers import StudyMarkers, utc_now
from linacsim.services.tolerance import actual_geometry, check_tolerances, planned_geometry
from linacsim.services.workflow import WorkflowStateMachine

logger = structlog.get_logger(__name__)


@dataclass
class ConsoleCallbacks:
    """Hooks consumed by the study-capture and rendering layers."""

    on_scenario_start: Optional[Callable[[ScenarioMarkers], None]] = None
    on_scenario_end: Optional[Callable[[ScenarioMarkers], None]] = None
    on_field_selected: Optional[Callable[[int], None]] = None
    on_delivery_progress: Optional[Callable[[int, float, Optional[float]], None]] = None
    on_record: Optional[Callable[[Dict[str, Any]], None]] = None


class ConsoleController:
    """Per-session state of the treatment console."""

    def __init__(
        self,
        scenario: ScenarioRecord,
        channel: SharedStateChannel,
        settings: Optional[Settings] = None,
        callbacks: Optional[ConsoleCallbacks] = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.scenario = scenario
        self.scenario_id = scenario.scenario_id
        self.channel = channel
        self.settings = settings or get_settings()
        self.callbacks = callbacks or ConsoleCallbacks()

        self.markers = StudyMarkers(
            self.scenario_id,
            on_start=self.callbacks.on_scenario_start,
            on_end=self.callbacks.on_scenario_end,
            clock=clock,
        )
        self.simulator = DeliverySimulator(
            scenario.fields,
            self.settings.simulation,
            on_progress=self.callbacks.on_delivery_progress,
            sleep=sleep,
        )
        self.workflow = WorkflowStateMachine(
            scenario.fields,
            self.simulator.progress,
            self.markers,
            on_field_selected=self.callbacks.on_field_selected,
            on_record=self._hand_off,
        )

        self.current_shift = CouchShift()
        self.shifts_applied_at: Optional[str] = None
        self._acknowledged: Set[Tuple[int, str]] = set()

        self._init_shared_state()
        self._unsubscribe = channel.subscribe(self.scenario_id, self._on_shared_state)
        self.refresh_tolerances()

        logger.info(
            "Console ready",
            scenario_id=self.scenario_id,
            fields_count=len(scenario.fields),
            version=self.settings.version,
        )

    # Shared state

    def _init_shared_state(self) -> None:
        state = self.channel.read(self.scenario_id)
        if state is None:
            self.channel.write(
                self.scenario_id,
                SharedScenarioState(scenario_id=self.scenario_id).to_wire(),
                merge=False,
            )
            return
        self._mirror(state)

    def _mirror(self, state: SharedScenarioState) -> None:
        self.current_shift = state.couch_shift.model_copy()
        self.shifts_applied_at = state.applied_at_timestamp

    def _on_shared_state(self, state: SharedScenarioState) -> None:
        self._mirror(state)
        self.refresh_tolerances()

    # Tolerances

    def refresh_tolerances(self) -> List[str]:
        """Re-check the selected field against the applied shift."""
        index = self.workflow.selected_index
        if index is None or self.scenario.fields[index].is_imaging:
            self.workflow.flag_out_of_tolerance([])
            return []

        field = self.scenario.fields[index]
        violations = check_tolerances(
            planned_geometry(field),
            actual_geometry(field, self.current_shift),
            self.settings.tolerance,
        )
        reasons = [v.parameter for v in violations if (index, v.parameter) not in self._acknowledged]
        self.workflow.flag_out_of_tolerance(reasons)
        return reasons

    def acknowledge_override(self) -> TransitionResult:
        index = self.workflow.selected_index
        for reason in self.workflow.override_reasons:
            self._acknowledged.add((index, reason))
        return self.workflow.acknowledge_override()

    # Operator actions

    @property
    def stage(self) -> WorkflowStage:
        return self.workflow.stage

    @property
    def status_message(self) -> str:
        return self.workflow.status_message

    def select_field(self, index: int) -> TransitionResult:
        result = self.workflow.select_field(index)
        if result.ok:
            self.refresh_tolerances()
        return result

    def set_field_active(self, index: int, active: bool) -> TransitionResult:
        result = self.workflow.set_field_active(index, active)
        self.refresh_tolerances()
        return result

    def prepare(self) -> TransitionResult:
        return self.workflow.prepare()

    def check_item(self, index: int, checked: bool = True) -> TransitionResult:
        return self.workflow.check_item(index, checked)

    def check_all(self) -> None:
        for i in range(len(self.workflow.checklist_items)):
            self.workflow.check_item(i, True)

    def confirm_prepare(self) -> TransitionResult:
        return self.workflow.confirm_prepare()

    def cancel_prepare(self) -> TransitionResult:
        return self.workflow.cancel_prepare()

    def ready(self) -> TransitionResult:
        return self.workflow.ready()

    async def beam_on(self) -> TransitionResult:
        """Deliver the selected field, then leave Beam On automatically."""
        result = self.workflow.begin_beam_on()
        if not result.ok:
            return result

        index = self.workflow.selected_index
        await self.simulator.deliver(index)
        result = self.workflow.complete_field()
        self.refresh_tolerances()
        return result

    async def deliver_remaining(self) -> List[int]:
        """Beam On for every pending field in order, stopping at the first refusal."""
        delivered = []
        while self.workflow.stage is WorkflowStage.READY:
            pending = self.workflow.pending_fields()
            if not pending:
                break
            if self.workflow.selected_index != pending[0]:
                self.select_field(pending[0])
            index = self.workflow.selected_index
            result = await self.beam_on()
            if self.simulator.progress[index].done:
                delivered.append(index)
            if not result.ok:
                break
            await asyncio.sleep(0)
        return delivered

    def record(self) -> TransitionResult:
        return self.workflow.record()

    def _hand_off(self) -> None:
        if self.callbacks.on_record is None:
            return
        self.callbacks.on_record(
            {
                "scenarioId": self.scenario_id,
                "scenarioFile": self.scenario.source,
                "errorPresent": self.scenario.error_present,
                "version": self.settings.version,
                "mode": self.settings.mode,
                "startedAt": _iso(self.markers.markers.started_at),
                "endedAt": _iso(self.markers.markers.ended_at),
                "consoleTaskSeconds": self.markers.markers.console_task_seconds,
            }
        )

    # Rendering snapshot

    def field_rows(self) -> List[Dict[str, Any]]:
        rows = []
        for i, field in enumerate(self.scenario.fields):
            progress = self.simulator.progress[i]
            plan = self.simulator.plan_for(i)
            rows.append(
                {
                    "index": i,
                    "name": field.name,
                    "beam_type": field.beam_type_label,
                    "imaging": field.is_imaging,
                    "active": self.workflow.active[i],
                    "selected": i == self.workflow.selected_index,
                    "plan_mu": field.monitor_units,
                    "delivered_mu": progress.delivered_mu,
                    "done": progress.done,
                    "gantry_plan": plan.start_deg,
                    "gantry_actual": (
                        progress.current_gantry_deg
                        if progress.current_gantry_deg is not None
                        else plan.start_deg
                    ),
                }
            )
        return rows

    def geometry_rows(self) -> List[Tuple[str, float, float]]:
        """(parameter, plan, actual) for the selected field."""
        index = self.workflow.selected_index
        if index is None:
            return []
        field = self.scenario.fields[index]
        planned = planned_geometry(field)
        actual = actual_geometry(field, self.current_shift)
        progress = self.simulator.progress[index]
        rows = []
        if "gantry" not in planned:
            plan = self.simulator.plan_for(index)
            gantry_actual = progress.current_gantry_deg
            rows.append(
                ("gantry", plan.start_deg, plan.start_deg if gantry_actual is None else gantry_actual)
            )
        for name, plan_value in planned.items():
            rows.append((name, plan_value, actual[name]))
        return rows

    def view(self) -> Dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "stage": self.workflow.stage.value,
            "status": self.workflow.status_message,
            "controls": self.workflow.controls(),
            "checklist": (
                list(zip(self.workflow.checklist_items, self.workflow.checklist))
                if self.workflow.checklist is not None
                else None
            ),
            "override_required": self.workflow.override_reasons,
            "couch_shift": self.current_shift.model_dump(),
            "shifts_applied_at": self.shifts_applied_at,
            "fields": self.field_rows(),
        }

    def close(self) -> None:
        self._unsubscribe()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
