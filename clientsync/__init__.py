"""
Client-side state synchronization against an authority server.
"""
from .session import ClientSession

__all__ = ["ClientSession"]
