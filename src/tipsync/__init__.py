"""Local-first sync and reconciliation engine for shared tracking rooms."""

__version__ = "0.1.0"
