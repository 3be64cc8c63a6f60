"""OpsPulse - connector sync engine and organizational analytics service."""

__version__ = "0.1.0"
