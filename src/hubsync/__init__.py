"""
hubsync: optimistic state synchronization for home-automation controllers.

A thin client keeps a live copy of the controller's state tree, shows
speculative edits immediately, and reconciles them against the authoritative
deltas the controller broadcasts.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
