"""
PostureCare Shared Module

Storage and utilities used across the service.
"""

from .storage import LocalBaselineStore, LocalEventLog, LocalSessionLog, PostureEvent, SessionRecord

__all__ = [
    'LocalBaselineStore',
    'LocalEventLog',
    'LocalSessionLog',
    'PostureEvent',
    'SessionRecord',
]
