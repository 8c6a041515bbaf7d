"""
Core Infrastructure for voxflow.

This package provides foundational components:
    - config.py: Configuration loading and validation
    - errors.py: Error codes and exception hierarchy
    - cancellation.py: Cooperative cancellation token
    - logging/: Structured logging with numeric levels
"""
