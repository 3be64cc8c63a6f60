"""SQLAlchemy models and repositories for OpsPulse persistence."""
