"""Task orchestration engine for bead-driven agent workflows."""

__version__ = "0.1.0"
