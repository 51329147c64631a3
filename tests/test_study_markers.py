"""Validate scenario lifecycle markers."""

from datetime import datetime, timedelta, timezone

from linacsim.services.study_markers import StudyMarkers


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class TestStudyMarkers:
    """Test start/end idempotence and task duration."""

    def test_start_is_idempotent(self):
        clock = FakeClock()
        markers = StudyMarkers("A1", clock=clock)
        first = markers.mark_start().started_at
        clock.advance(30)

        assert markers.mark_start().started_at == first
        assert markers.mark_start(force=True).started_at == first + timedelta(seconds=30)

    def test_task_seconds(self):
        clock = FakeClock()
        markers = StudyMarkers("A1", clock=clock)
        markers.mark_start()
        clock.advance(95.4)
        markers.mark_end()

        assert markers.markers.console_task_seconds == 95
        assert not markers.markers.start_backfilled

    def test_end_without_start_backfills(self):
        markers = StudyMarkers("A1", clock=FakeClock())
        result = markers.mark_end()
        assert result.started_at == result.ended_at
        assert result.start_backfilled

    def test_callbacks_receive_copies(self):
        seen = []
        markers = StudyMarkers("A1", on_start=seen.append, clock=FakeClock())
        markers.mark_start()
        seen[0].started_at = None
        assert markers.started

    def test_callback_failure_is_contained(self):
        def broken(_markers):
            raise RuntimeError("sink down")

        markers = StudyMarkers("A1", on_end=broken, clock=FakeClock())
        assert markers.mark_end().ended_at is not None
