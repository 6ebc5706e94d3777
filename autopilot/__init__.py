"""
Autopilot: Autonomous Feature Orchestrator

Drives an external AI coding agent through planning, implementation, review,
testing and commit steps for a single feature request, with pausing, retrying,
context handoff and graceful degradation to manual control.
"""

__version__ = "0.1.0"
__author__ = "Autopilot Team"
__email__ = "autopilot@example.com"

from autopilot.core.exceptions import AutopilotError

__all__ = ["AutopilotError", "__version__"]
