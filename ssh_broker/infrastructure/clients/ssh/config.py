"""
Translation of broker connection configs into asyncssh connect options.
"""

from typing import Any, Dict, Optional

from ....core.domain.connection import AuthMethod, ConnectionConfig
from ....core.domain.jump import JumpHostConfig

CLIENT_VERSION = "SSH_Broker_1.0"


def to_asyncssh_kwargs(config: ConnectionConfig,
                       default_known_hosts: Optional[str] = None) -> Dict[str, Any]:
    """Convert a connection config to ``asyncssh.connect`` kwargs."""
    timeout_s = config.timeout_ms / 1000.0
    kwargs: Dict[str, Any] = {
        'host': config.host,
        'port': config.port,
        'username': config.username,
        'client_version': CLIENT_VERSION,
        'connect_timeout': timeout_s,
        'login_timeout': timeout_s,
    }

    if config.keep_alive_interval_s:
        kwargs['keepalive_interval'] = config.keep_alive_interval_s

    # Authentication
    if config.auth_method == AuthMethod.PASSWORD:
        kwargs['password'] = config.password
        kwargs['client_keys'] = None
    else:
        kwargs['client_keys'] = [config.key_path]
        if config.passphrase:
            kwargs['passphrase'] = config.passphrase

    if config.compression:
        kwargs['compression_algs'] = ['zlib@openssh.com', 'zlib']

    # Known hosts
    known_hosts = config.known_hosts_path or default_known_hosts
    if not config.strict_host_key_checking:
        kwargs['known_hosts'] = None
    elif known_hosts:
        kwargs['known_hosts'] = known_hosts

    if isinstance(config, JumpHostConfig):
        kwargs['agent_forwarding'] = config.forward_agent

    return kwargs
