"""
Simulation services for the console display.

Seeded misalignment, delivery timing and geometry, tolerance checks,
workflow gating and study lifecycle markers.
"""

from .delivery import DeliverySimulator
from .seed import seed
from .study_markers import StudyMarkers
from .workflow import WorkflowStateMachine

__all__ = ["DeliverySimulator", "StudyMarkers", "WorkflowStateMachine", "seed"]
