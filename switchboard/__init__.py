"""Switchboard - multi-provider chat orchestration with tools and saved conversations."""

__version__ = "0.1.0"

from switchboard.config import Config
from switchboard.orchestrator import RuntimeConfig, TurnOutcome, TurnStatus, run_turn

__all__ = ["Config", "RuntimeConfig", "TurnOutcome", "TurnStatus", "run_turn", "__version__"]
