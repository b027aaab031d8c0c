"""memoranda: project-local memos for coding agents."""

__version__ = "0.1.0"
