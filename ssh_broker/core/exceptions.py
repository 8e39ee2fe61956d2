"""
Exception hierarchy for the SSH broker.

Managers raise these internally and convert them into failed
``OperationResult`` envelopes at their public boundary.
"""

from typing import Optional


class BrokerError(Exception):
    """Base exception class for all broker errors"""

    retryable = False


class ConfigError(BrokerError):
    """Raised when a configuration is missing fields or is inconsistent"""
    pass


class ConnectError(BrokerError):
    """Raised when a connection could not be established"""

    def __init__(self, message: str, host: Optional[str] = None):
        self.host = host
        super().__init__(message)


class HostNotAllowed(ConnectError):
    """Raised when the target host is not on the allow-list"""
    pass


class AuthError(ConnectError):
    """Raised when the remote endpoint rejects the credentials"""
    pass


class PoolExhausted(ConnectError):
    """Raised when the pool already holds the maximum number of connections"""

    retryable = True


class BrokerTimeoutError(ConnectError, TimeoutError):
    """Raised when a connect or probe does not finish within its timeout"""

    retryable = True


class ProbeFailure(BrokerError):
    """Raised when a latency probe fails"""

    retryable = True


class TunnelError(BrokerError):
    """Raised for tunnel setup errors, e.g. the listener could not bind"""
    pass


class JumpChainError(BrokerError):
    """Raised when a jump chain cannot be established"""

    def __init__(self, message: str, hop_index: Optional[int] = None,
                 hop_host: Optional[str] = None):
        self.hop_index = hop_index
        self.hop_host = hop_host
        super().__init__(message)


class SessionError(BrokerError):
    """Raised for unknown sessions or sessions that cannot be snapshotted"""
    pass


class PartialRecoveryWarning(UserWarning):
    """Issued when a session was recovered but some of its resources were not"""
    pass
