"""
Repositories over the flow-log tables.
"""

from .data_store import DataStore

__all__ = ['DataStore']
