"""Background job orchestration for AI-assisted code planning."""

__version__ = "0.1.0"
