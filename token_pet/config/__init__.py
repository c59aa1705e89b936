"""
Configuration loading for token-pet.
"""
