"""
Broker services: connection pooling, tunnels, jump chains and sessions.
"""
