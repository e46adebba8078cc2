"""Stitch - workflow orchestration engine.

Executes compiled workflow graphs for tracked entities and keeps each
entity's journey position in sync with the runs beneath it.
"""

__version__ = "0.1.0"
