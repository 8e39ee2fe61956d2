"""
Infrastructure layer: asyncssh transport, configuration, logging,
persistence and the broker managers.
"""
