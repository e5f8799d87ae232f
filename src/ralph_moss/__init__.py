"""ralph-moss — dependency-aware parallel runner for AI coding agents."""

__version__ = "1.0.0"
