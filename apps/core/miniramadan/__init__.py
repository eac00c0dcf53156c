"""Local-first family store, sync coordinator and progression engine."""

__version__ = "0.1.0"
