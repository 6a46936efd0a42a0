"""
Core building blocks: configuration, logging, exceptions and shared types.
"""
