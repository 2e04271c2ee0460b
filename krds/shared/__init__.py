"""
Shared infrastructure: configuration, logging and caching.
"""
