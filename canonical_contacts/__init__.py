"""
Canonical contacts: identity resolution, record merging and legacy migration.
"""

__version__ = "0.1.0"
