"""
Agent Watch - live state reconciliation for coding-agent dashboards.

This package ingests the event stream describing what each monitored
repository's agent is doing, derives per-repository status and
time-escalating stuck alerts, and reconciles optimistic user intents
(pause, resume, acknowledge) against server confirmation.
"""

__version__ = "0.1.0"

from agent_watch.config import Config, load_config

__all__ = [
    "__version__",
    "Config",
    "load_config",
]
