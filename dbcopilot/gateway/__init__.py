"""
Query Execution Gateway Module

Usage:
    from dbcopilot.gateway import QueryGateway
"""

from dbcopilot.gateway.gateway import QueryGateway

__all__ = ["QueryGateway"]
