"""Content automation pipeline orchestrator.

Drives image, video, voice and merge generation jobs for the sub-products of a
channel through external generation APIs, tracking every job as a step of an
automation run stored in PostgreSQL.
"""

__version__ = "0.1.0"

from automation.database import async_session_factory, get_session  # noqa: E402
from automation.models import AutomationRun, AutomationRunStep, Base  # noqa: E402

__all__ = [
    "__version__",
    "AutomationRun",
    "AutomationRunStep",
    "Base",
    "async_session_factory",
    "get_session",
]
