"""
Application layer: wiring and lifecycle of the broker components.
"""

from .startup import ApplicationStartup

__all__ = ["ApplicationStartup"]
