"""
Display controllers.

One controller per screen; both talk to each other only through a
``SharedStateChannel``.
"""

from .console import ConsoleCallbacks, ConsoleController
from .imaging import ImagingController

__all__ = ["ConsoleCallbacks", "ConsoleController", "ImagingController"]
