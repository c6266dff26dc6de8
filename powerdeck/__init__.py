"""powerdeck - automation engine for portable power stations."""

__version__ = "0.3.0"
