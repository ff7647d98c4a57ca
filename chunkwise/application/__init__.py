"""
Application layer: component wiring and lifecycle.
"""

from .startup import ApplicationStartup

__all__ = [
    "ApplicationStartup",
]
