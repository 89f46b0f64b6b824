"""
Connection Pool Module

Bounded per-Connection pools of engine handles plus the credential vault
used to open stored passwords when a handle is dialed.
"""

from dbcopilot.pool.manager import (
    ConnectionPoolManager,
    ConnectionResolver,
    PooledHandle,
    VaultResolver,
)
from dbcopilot.pool.vault import CredentialVault

__all__ = [
    "ConnectionPoolManager",
    "ConnectionResolver",
    "CredentialVault",
    "PooledHandle",
    "VaultResolver",
]
