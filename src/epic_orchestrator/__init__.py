"""Epic Orchestrator - monitors epics on an issue tracker and drives agent sessions."""

__version__ = "0.1.0"

from .config import OrchestratorConfig, load_config
from .errors import ErrorCategory, OrchestratorError
from .models import EpicRef, OrchestratorSnapshot
from .orchestrator import Orchestrator

__all__ = [
    "ErrorCategory",
    "EpicRef",
    "Orchestrator",
    "OrchestratorConfig",
    "OrchestratorError",
    "OrchestratorSnapshot",
    "load_config",
]
