"""
OpenContext - a personal context store that maintains itself.
"""

from .core.config import VERSION

__version__ = VERSION
