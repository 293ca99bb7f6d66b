"""
App API Routes
==============

API route handlers for the App API Service.
"""

from services.app_api.routes import assessments, auth, buddies, privacy


__all__ = ["assessments", "auth", "buddies", "privacy"]
