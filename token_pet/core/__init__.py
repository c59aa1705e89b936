"""
Core modules for token-pet.

This package contains usage reading, sync range resolution, the sync
pipeline, auto sync scheduling, and leaderboard ranking.
"""
