"""Gastown town orchestrator.

Per-town control plane for AI coding agents running in ephemeral containers:
work items, agent hooks, container dispatch, review/merge and escalations.
"""

from gastown.config import Settings, settings
from gastown.logging import configure_logging

# Configure logging FIRST before any other modules use structlog
configure_logging(settings.log_level, settings.json_logs)

__version__ = "0.1.0"
__all__ = ["Settings", "__version__", "settings"]
