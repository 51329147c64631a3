"""Validate gantry geometry and the delivery simulator."""

import asyncio

import pytest

from linacsim.core.config import SimulationConfig
from linacsim.core.exceptions import DeliveryInProgressError
from linacsim.core.models import ArcDirection, TreatmentField
from linacsim.services.delivery import (
    DeliverySimulator,
    arc_angle_at,
    choose_arc,
    delivered_mu_at,
    delivery_seconds,
    infer_arc_direction,
    normalize_deg,
    parse_gantry_plan,
    progress_at,
    step_count,
)


def _field(**kwargs):
    return TreatmentField.model_validate(kwargs)


class TestGantryParsing:
    """Test gantry specification parsing."""

    def test_numeric_static(self):
        plan = parse_gantry_plan(370)
        assert not plan.is_arc
        assert plan.start_deg == plan.end_deg == 10

    def test_arc_string(self):
        plan = parse_gantry_plan("181-179")
        assert plan.is_arc
        assert (plan.start_deg, plan.end_deg) == (181, 179)

    def test_negative_static_angle(self):
        plan = parse_gantry_plan("-30")
        assert not plan.is_arc
        assert plan.start_deg == 330

    def test_text_suffix_and_garbage(self):
        assert parse_gantry_plan("180 deg").start_deg == 180
        assert parse_gantry_plan("abc").start_deg == 0
        assert parse_gantry_plan("").start_deg == 0
        assert parse_gantry_plan(None).start_deg == 0

    def test_normalize(self):
        assert normalize_deg(-90) == 270
        assert normalize_deg(720) == 0
        assert normalize_deg("nope") == 0


class TestArcs:
    """Test arc direction and interpolation."""

    def test_direction_from_name(self):
        assert infer_arc_direction("Arc2 CCW") is ArcDirection.CCW
        assert infer_arc_direction("Arc1 CW") is ArcDirection.CW
        assert infer_arc_direction("Arc") is ArcDirection.CW

    def test_near_full_rotation_flips(self):
        """A 1 degree clockwise hop becomes a 359 degree counter-clockwise arc."""
        assert choose_arc(180, 179, ArcDirection.CW) == (ArcDirection.CCW, 359)

    def test_long_arc_keeps_direction(self):
        assert choose_arc(179, 181, ArcDirection.CW) == (ArcDirection.CW, 358)

    def test_interpolation(self):
        assert arc_angle_at(180, 179, ArcDirection.CW, 0.0) == 180
        assert arc_angle_at(180, 179, ArcDirection.CW, 0.5) == pytest.approx(359.5)
        assert arc_angle_at(180, 179, ArcDirection.CW, 1.0) == pytest.approx(179)

    def test_threshold_is_configurable(self):
        direction, dist = choose_arc(10, 0, ArcDirection.CW, flip_threshold_deg=20)
        assert direction is ArcDirection.CCW
        assert dist == 350


class TestTiming:
    """Test delivery duration and MU interpolation."""

    def test_duration_clamped(self):
        config = SimulationConfig()
        assert delivery_seconds(50, 600, config) == pytest.approx(5.0)
        assert delivery_seconds(1, 600, config) == 2.5
        assert delivery_seconds(1000, 600, config) == 10.0
        assert delivery_seconds(0, 600, config) == 0.0

    def test_step_count_floor(self):
        config = SimulationConfig()
        assert step_count(2.5, config) == 50
        assert step_count(0.5, config) == 15

    def test_final_sample_is_exact(self):
        assert delivered_mu_at(123.4, 1.0) == 123.4
        assert delivered_mu_at(100, 0.25) == 25


class TestDeliverySimulator:
    """Test field delivery."""

    def test_static_field_delivers_exactly(self, no_sleep):
        fields = [_field(fieldName="AP", monitorUnits=100, doseRate=600, gantryAngle=0)]
        samples = []
        sim = DeliverySimulator(
            fields, SimulationConfig(), on_progress=lambda i, mu, g: samples.append(mu), sleep=no_sleep
        )

        state = asyncio.run(sim.deliver(0))

        assert state.done
        assert state.delivered_mu == 100
        assert samples == sorted(samples)
        assert sim.running_index is None

    def test_arc_ends_at_planned_angle(self, no_sleep):
        fields = [_field(fieldName="Arc1 CW", monitorUnits=50, gantryAngle="181-179")]
        sim = DeliverySimulator(fields, SimulationConfig(), sleep=no_sleep)

        state = asyncio.run(sim.deliver(0))

        assert state.current_gantry_deg == pytest.approx(179)

    def test_imaging_field_is_instant(self):
        slept = []

        async def sleep(seconds):
            slept.append(seconds)

        fields = [_field(fieldName="kV pair", isImaging=True, monitorUnits=0)]
        sim = DeliverySimulator(fields, SimulationConfig(), sleep=sleep)

        state = asyncio.run(sim.deliver(0))

        assert state.done
        assert slept == []

    def test_second_delivery_is_refused(self, no_sleep):
        fields = [_field(monitorUnits=10), _field(monitorUnits=10)]
        sim = DeliverySimulator(fields, SimulationConfig(), sleep=no_sleep)

        async def run():
            return await asyncio.gather(sim.deliver(0), sim.deliver(1), return_exceptions=True)

        first, second = asyncio.run(run())

        assert first.done
        assert isinstance(second, DeliveryInProgressError)
        assert not sim.progress[1].done

    def test_resume_never_steps_backwards(self, no_sleep):
        fields = [_field(monitorUnits=100)]
        samples = []
        sim = DeliverySimulator(
            fields, SimulationConfig(), on_progress=lambda i, mu, g: samples.append(mu), sleep=no_sleep
        )
        sim.progress[0].delivered_mu = 60.0

        asyncio.run(sim.deliver(0))

        assert min(samples) >= 60.0
        assert sim.progress[0].delivered_mu == 100

    def test_progress_callback_errors_do_not_stop_delivery(self, no_sleep):
        def broken(*_args):
            raise RuntimeError("render failed")

        sim = DeliverySimulator(
            [_field(monitorUnits=5)], SimulationConfig(), on_progress=broken, sleep=no_sleep
        )

        assert asyncio.run(sim.deliver(0)).done

    def test_deliver_all_in_order(self, no_sleep):
        fields = [_field(monitorUnits=100), _field(isImaging=True), _field(monitorUnits=50)]
        sim = DeliverySimulator(fields, SimulationConfig(), sleep=no_sleep)

        delivered = asyncio.run(sim.deliver_all())

        assert delivered == [0, 1, 2]
        assert [sim.progress[i].delivered_mu for i in (0, 2)] == [100, 50]
        assert sim.remaining() == []


class TestProgressAt:
    """Test the pure per-sample snapshot."""

    def test_static_field_holds_start(self):
        snapshot = progress_at(_field(monitorUnits=80, gantryAngle=270), 0.5)
        assert snapshot.delivered_mu == 40
        assert snapshot.current_gantry_deg == 270
        assert not snapshot.done

    def test_arc_endpoints(self):
        field = _field(fieldName="Arc1", monitorUnits=80, gantryAngle="180-179")
        assert progress_at(field, 0.0).current_gantry_deg == 180
        end = progress_at(field, 1.0)
        assert end.done
        assert end.delivered_mu == 80
        assert end.current_gantry_deg == pytest.approx(179)
