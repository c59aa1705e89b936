"""
Data models and on-disk state for token-pet.

Holds the records exchanged with the backend, the sync lock store, and
readers for the locally maintained pet files.
"""
