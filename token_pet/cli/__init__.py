"""
Command line interface for token-pet.
"""
