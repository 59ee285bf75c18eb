"""
Board Sync - client-side synchronization engine for collaborative task boards.

Keeps an optimistic local cache of board state, merges the backing store's
change feed into it, tracks collaborator presence and resolves drag gestures
against registered board columns.
"""

__version__ = "0.1.0"
