"""Background execution engine for issue-bound shell commands."""

__version__ = "0.1.0"
