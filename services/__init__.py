"""
Mind Measure Services
=====================

HTTP services for the Mind Measure platform.

Services:
- app_api: Authentication, assessments, buddies and privacy controls
- admin: Database proxy, security incidents, compliance and backups
"""

__all__ = [
    "app_api",
    "admin",
]
