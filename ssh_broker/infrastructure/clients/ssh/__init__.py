"""
asyncssh-backed SSH transport.
"""

from .config import to_asyncssh_kwargs
from .transport import AsyncSSHListener, AsyncSSHSession, AsyncSSHTransport

__all__ = ["AsyncSSHListener", "AsyncSSHSession", "AsyncSSHTransport", "to_asyncssh_kwargs"]
