"""
Smart Topics - group saved notes into stable, user-facing topics.

Pipeline:
    notes -> embedding cache -> clustering -> topic matching -> topics + events
"""

__version__ = "0.3.0"
