"""
token-pet: sync a virtual pet's token usage to a shared leaderboard.
"""

__version__ = "0.1.0"
