"""
KRDS design-system scraper support code: configuration, logging and a multi-tier cache.
"""

__version__ = "0.1.0"
