"""Conductor - multi-phase agent orchestration with classified recovery."""

__version__ = "0.3.0"
