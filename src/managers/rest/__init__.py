"""
REST Resource Manager.

Generic manager for resources exposed as JSON objects under a REST collection.
"""

from managers.rest.manager import RestResourceManager

__all__ = ["RestResourceManager"]
