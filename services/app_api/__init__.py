"""
App API Service
===============

HTTP API used by the Mind Measure mobile and web apps.

Features:
- Sign-up with consent, sign-in and account verification
- Assessment sessions and baseline scoring
- Buddy invitations
- Consent management, data export and account deletion
"""

__version__ = "0.1.0"
