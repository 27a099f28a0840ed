"""
Dab runner - declarative browser task automation with multi-account sessions
"""

__version__ = "1.5.3"
