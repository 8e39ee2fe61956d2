"""
SSH client transport backed by asyncssh.
"""
