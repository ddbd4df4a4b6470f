"""
Block cadence miner.

Keeps a remote node mining blocks close to a target interval.
"""

from .config import MinerConfig
from .scheduler import run_scheduler

__all__ = ["MinerConfig", "run_scheduler"]
