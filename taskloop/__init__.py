"""
taskloop - Autonomous task-list runner for AI coding agents.

Drives an external coding agent through a dependency-ordered PRD, one
iteration at a time, until every task is done or a budget runs out.
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
