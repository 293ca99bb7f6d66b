"""
Admin Service
=============

Staff-facing API: the allow-listed database proxy, security incidents,
compliance and backups.
"""

__version__ = "0.1.0"
