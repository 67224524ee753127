"""
API version resolution.
"""

from .resolver import ResolvedVersion, VersionResolver

__all__ = ["ResolvedVersion", "VersionResolver"]
