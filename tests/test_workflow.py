"""Validate the console workflow state machine."""

from linacsim.core.models import DeliveryProgress, TreatmentField, WorkflowStage
from linacsim.services.study_markers import StudyMarkers
from linacsim.services.workflow import DEFAULT_CHECKLIST, WorkflowStateMachine


def _machine(*fields, **kwargs):
    fields = [TreatmentField.model_validate(f) for f in fields]
    progress = {i: DeliveryProgress() for i in range(len(fields))}
    markers = StudyMarkers("A1_noErrors")
    return WorkflowStateMachine(fields, progress, markers, **kwargs), progress, markers


def _to_ready(machine):
    machine.prepare()
    for i in range(len(DEFAULT_CHECKLIST)):
        machine.check_item(i)
    return machine.confirm_prepare()


class TestPrepare:
    """Test the Prepare stage and checklist."""

    def test_initial_state(self):
        machine, _, _ = _machine({"fieldName": "AP", "monitorUnits": 100})
        assert machine.stage is WorkflowStage.PREVIEW
        assert machine.selected_index == 0
        assert machine.status_message == "To begin, click Prepare."

    def test_confirm_requires_every_item(self):
        machine, _, markers = _machine({"monitorUnits": 100})
        machine.prepare()
        machine.check_item(0)

        result = machine.confirm_prepare()

        assert not result.ok
        assert machine.stage is WorkflowStage.PREPARE
        assert not markers.started

    def test_confirm_starts_scenario(self):
        machine, _, markers = _machine({"monitorUnits": 100})

        result = _to_ready(machine)

        assert result.ok
        assert machine.stage is WorkflowStage.READY
        assert markers.started

    def test_cancel_returns_to_previous_stage(self):
        machine, _, _ = _machine({"monitorUnits": 100})
        machine.prepare()
        machine.cancel_prepare()
        assert machine.stage is WorkflowStage.PREVIEW
        assert machine.checklist is None

    def test_nothing_to_deliver_goes_to_record(self):
        machine, _, _ = _machine({"fieldName": "kV", "isImaging": True})
        _to_ready(machine)
        assert machine.stage is WorkflowStage.RECORD


class TestBeamOn:
    """Test Beam On gating and completion."""

    def test_refused_before_prepare(self):
        machine, _, _ = _machine({"monitorUnits": 100})
        result = machine.begin_beam_on()
        assert not result.ok
        assert machine.stage is WorkflowStage.PREVIEW

    def test_refused_for_imaging_field(self):
        machine, _, _ = _machine({"fieldName": "kV", "isImaging": True}, {"monitorUnits": 100})
        _to_ready(machine)
        machine.select_field(0)

        result = machine.begin_beam_on()

        assert not result.ok
        assert "imaging" in result.message

    def test_refused_while_override_pending(self):
        machine, _, _ = _machine({"monitorUnits": 100})
        _to_ready(machine)
        machine.flag_out_of_tolerance(["couch_vertical"])

        result = machine.begin_beam_on()

        assert not result.ok
        assert result.message == "Override required: couch_vertical"

        machine.acknowledge_override()
        assert machine.begin_beam_on().ok

    def test_completion_selects_next_pending(self):
        machine, progress, _ = _machine({"monitorUnits": 100}, {"monitorUnits": 50})
        _to_ready(machine)
        machine.begin_beam_on()
        progress[0].done = True

        result = machine.complete_field()

        assert result.stage is WorkflowStage.READY
        assert machine.selected_index == 1

    def test_last_field_moves_to_record(self):
        machine, progress, _ = _machine({"monitorUnits": 100})
        _to_ready(machine)
        machine.begin_beam_on()
        progress[0].done = True

        assert machine.complete_field().stage is WorkflowStage.RECORD

    def test_field_changes_refused_during_beam(self):
        machine, _, _ = _machine({"monitorUnits": 100}, {"monitorUnits": 50})
        _to_ready(machine)
        machine.begin_beam_on()

        assert not machine.select_field(1).ok
        assert not machine.set_field_active(1, False).ok
        assert machine.selected_index == 0


class TestFieldActivation:
    """Test deactivating fields."""

    def test_deactivated_field_not_required(self):
        machine, progress, _ = _machine({"monitorUnits": 100}, {"monitorUnits": 50})
        _to_ready(machine)
        machine.set_field_active(1, False)
        progress[0].done = True
        assert machine.all_delivered

    def test_inactive_in_scenario(self):
        machine, _, _ = _machine({"monitorUnits": 100, "active": False}, {"monitorUnits": 50})
        assert machine.selected_index == 1
        assert machine.pending_fields() == [1]

    def test_deactivating_selection_moves_it(self):
        machine, _, _ = _machine({"monitorUnits": 100}, {"monitorUnits": 50})
        machine.set_field_active(0, False)
        assert machine.selected_index == 1
        assert not machine.select_field(0).ok


class TestRecord:
    """Test Record gating and the study hand-off."""

    def test_refused_while_fields_remain(self):
        machine, _, markers = _machine({"monitorUnits": 100})
        _to_ready(machine)

        result = machine.record()

        assert not result.ok
        assert result.message == "Complete all fields before recording."
        assert not markers.ended

    def test_record_ends_scenario_and_hands_off(self):
        handed_off = []
        machine, progress, markers = _machine(
            {"monitorUnits": 100}, on_record=lambda: handed_off.append(True)
        )
        _to_ready(machine)
        progress[0].done = True

        result = machine.record()

        assert result.ok
        assert markers.ended
        assert handed_off == [True]
        assert machine.status_message.startswith("Study questions opened")

    def test_record_without_start_backfills(self):
        machine, _, markers = _machine({"fieldName": "kV", "isImaging": True})

        assert machine.record().ok
        assert markers.markers.start_backfilled
        assert markers.markers.console_task_seconds == 0

    def test_refused_during_prepare(self):
        machine, _, _ = _machine({"fieldName": "kV", "isImaging": True})
        machine.prepare()
        assert not machine.record().ok
