"""
Pseudonym Generation
====================

Salted SHA-256 pseudonyms that separate analytics rows from identities.

- user_hash = SHA-256(user_id:pepper:YYYY-MM)
- university_hash = SHA-256(university_code:pepper)
- cohort_hash = SHA-256(university_code:cohort:pepper)

Hashes are deterministic so the mapping can be recomputed from the user id
and the month stored on the profile; nothing else links the two domains.

Version: 0.1.0
"""

import hashlib
from datetime import UTC, date, datetime

from shared.config import settings


DEFAULT_COHORT = "default"


def month_key(when: date | datetime | None = None) -> str:
    """YYYY-MM for the given moment (UTC now by default)."""
    when = when or datetime.now(UTC)
    return f"{when.year:04d}-{when.month:02d}"


def week_key(when: date | datetime) -> str:
    """ISO week string, e.g. 2025-W07."""
    iso = when.isocalendar()
    return f"{iso.year:04d}-W{iso.week:02d}"


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class PseudonymGenerator:
    """Derives analytics pseudonyms with a secret pepper."""

    def __init__(self, pepper: str | None = None) -> None:
        self._pepper = pepper or settings.privacy.pepper.get_secret_value()

    def user_hash(self, user_id: str, month: str | date | datetime | None = None) -> str:
        """
        Pseudonym for a user in a given month.

        Args:
            user_id: Identity-domain user id
            month: YYYY-MM string or a date within the month (defaults to now)
        """
        key = month if isinstance(month, str) else month_key(month)
        return _sha256(f"{user_id}:{self._pepper}:{key}")

    def university_hash(self, university_code: str) -> str:
        return _sha256(f"{university_code}:{self._pepper}")

    def cohort_hash(self, university_code: str, cohort: str = DEFAULT_COHORT) -> str:
        return _sha256(f"{university_code}:{cohort}:{self._pepper}")

    def subject_hash(self, user_id: str) -> str:
        """Month-independent digest used on deletion certificates."""
        return _sha256(f"{user_id}:{self._pepper}")
