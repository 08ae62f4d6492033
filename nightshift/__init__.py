"""
Nightshift
==========

Personal overnight agent orchestrator: runs CLI coding agents against a
job queue while you sleep and leaves a briefing for the morning.
"""

__version__ = "0.1.0"
