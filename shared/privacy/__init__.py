"""
Privacy Module
==============

Pseudonymisation, consent, export and deletion.

Usage:
    from shared.privacy import PrivacyService

    privacy = PrivacyService(get_backend())
    user_hash = await privacy.get_user_pseudonym(user_id)
"""

from shared.privacy.pseudonym import PseudonymGenerator, month_key, week_key
from shared.privacy.service import (
    ConsentRequiredError,
    PrivacyError,
    PrivacyService,
    ProfileNotFoundError,
    calculate_deletion_date,
    consent_hash,
)


__all__ = [
    "PseudonymGenerator",
    "month_key",
    "week_key",
    "PrivacyService",
    "PrivacyError",
    "ConsentRequiredError",
    "ProfileNotFoundError",
    "calculate_deletion_date",
    "consent_hash",
]
