"""Core types, configuration, errors and logging."""
