"""Convoy - work dispatch and fleet management for a team of autonomous agents."""

__version__ = "0.1.0"
