"""
Reaper module.
Contains the stale-lock reclaimer for recovering abandoned jobs.
"""

from delayed_jobs.reaper.main import Reclaimer, run

__all__ = ["Reclaimer", "run"]
