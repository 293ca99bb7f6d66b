"""
Privacy Service
===============

Consent, pseudonymisation, export and deletion workflows.

Data lives in two domains:
- Identity domain: profiles, consent_records and the wellness tables,
  keyed by user_id
- Analytics domain: user_pseudonyms, privacy_assessment_sessions and
  wellness_scores, keyed by user_hash with week-level timestamps

Version: 0.1.0
"""

import hashlib
import json
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from shared.audit import AuditLogger
from shared.backend import (
    AuthError,
    BackendService,
    OrderBy,
    QueryFilter,
    QueryOptions,
)
from shared.config import settings
from shared.logging import get_logger
from shared.models.privacy import (
    ConfidenceLevel,
    ConsentRecord,
    ConsentWithdrawal,
    DataExportResult,
    DeletionResult,
    PrivacyAssessmentCreate,
    PrivacyUserCreate,
    PrivacyUserResult,
    RetentionPreference,
    ScoreCategory,
    TimeOfDay,
    UserWellnessData,
)
from shared.models.security import AuditAction, RiskLevel
from shared.privacy.pseudonym import DEFAULT_COHORT, PseudonymGenerator, month_key, week_key


logger = get_logger(__name__)

PROFILES_TABLE = "profiles"
CONSENT_TABLE = "consent_records"
PSEUDONYMS_TABLE = "user_pseudonyms"
PRIVACY_SESSIONS_TABLE = "privacy_assessment_sessions"
WELLNESS_SCORES_TABLE = "wellness_scores"
CERTIFICATES_TABLE = "deletion_certificates"

# Identity-domain tables holding a user_id column, in deletion order
USER_DATA_TABLES = (
    "fusion_outputs",
    "user_baselines",
    "assessment_sessions",
    "buddies",
    "buddy_invites",
    "user_roles",
    CONSENT_TABLE,
    PROFILES_TABLE,
)

# Columns never included in exports
EXPORT_REDACTED_COLUMNS = frozenset({"token_hash", "opt_out_token_hash", "password_hash"})

WELLNESS_HISTORY_LIMIT = 50

DAYS_PER_YEAR = 365
RETENTION_YEARS = {
    RetentionPreference.ONE_YEAR: 1,
    RetentionPreference.THREE_YEARS: 3,
    RetentionPreference.SEVEN_YEARS: 7,
    RetentionPreference.INDEFINITE: 50,
}
DEFAULT_RETENTION_YEARS = 7


class PrivacyError(Exception):
    """Privacy workflow failure."""


class ConsentRequiredError(PrivacyError):
    """The user has not consented to the processing requested."""


class ProfileNotFoundError(PrivacyError):
    """No profile exists for the user."""


def calculate_deletion_date(
    preference: RetentionPreference | str | None,
    now: datetime | None = None,
) -> datetime:
    """
    Scheduled deletion time for a retention preference.

    Years are 365 days; indefinite means 50 years and anything unknown 7.
    """
    try:
        years = RETENTION_YEARS[RetentionPreference(preference)]
    except ValueError:
        years = DEFAULT_RETENTION_YEARS
    return (now or datetime.now(UTC)) + timedelta(days=DAYS_PER_YEAR * years)


def consent_hash(user_id: str, consent: ConsentRecord) -> str:
    """SHA-256 over the consent document, the user and its timestamp."""
    document = json.dumps(consent.model_dump(mode="json"), sort_keys=True)
    return hashlib.sha256(
        f"{document}{user_id}{consent.consent_timestamp.isoformat()}".encode()
    ).hexdigest()


def score_category(score: int, previous_score: int | None = None) -> ScoreCategory:
    """Bucket a 0-100 score relative to the previous one."""
    if score < 40:
        return ScoreCategory.CONCERNING
    if previous_score is not None and score - previous_score >= 5:
        return ScoreCategory.IMPROVING
    if previous_score is not None and previous_score - score >= 10:
        return ScoreCategory.CONCERNING
    return ScoreCategory.STABLE


def confidence_level(uncertainty: float) -> ConfidenceLevel:
    if uncertainty < 0.2:
        return ConfidenceLevel.HIGH
    if uncertainty < 0.5:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


class PrivacyService:
    """
    Privacy workflows over a BackendService.

    Example:
        >>> privacy = PrivacyService(get_backend())
        >>> result = await privacy.create_user(PrivacyUserCreate(email=..., password=...))
        >>> await privacy.export_user_data(result.user_id)
    """

    def __init__(
        self,
        backend: BackendService,
        audit: AuditLogger | None = None,
        pseudonyms: PseudonymGenerator | None = None,
    ) -> None:
        self._backend = backend
        self._db = backend.database
        self._audit = audit or AuditLogger(backend.database)
        self._pseudonyms = pseudonyms or PseudonymGenerator()

    # =========================================================================
    # Accounts & consent
    # =========================================================================

    async def create_user(self, request: PrivacyUserCreate) -> PrivacyUserResult:
        """
        Sign up with a consent decision.

        Creates the auth identity, the profile carrying the consent version
        and retention preference, the analytics pseudonym when analytics
        were consented to, and the consent record.
        """
        consent = request.consent
        sign_up = await self._backend.auth.sign_up(
            request.email,
            request.password,
            first_name=request.first_name,
            last_name=request.last_name,
        )
        user_id = sign_up.user_id
        scheduled_deletion = calculate_deletion_date(consent.data_retention_preference)

        rows = await self._db.insert(
            PROFILES_TABLE,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "email": request.email.strip().lower(),
                "first_name": request.first_name,
                "last_name": request.last_name,
                "display_name": request.display_name or request.first_name,
                "university_code": request.university_code,
                "cohort": request.cohort,
                "baseline_established": False,
                "consent_version": consent.consent_version,
                "consent_timestamp": consent.consent_timestamp,
                "data_retention_preference": consent.data_retention_preference.value,
                "scheduled_deletion": scheduled_deletion,
            },
        )
        profile = rows[0]

        pseudonym_created = False
        if consent.data_processing_purposes.anonymous_analytics:
            await self._create_pseudonym(user_id, request.university_code, request.cohort)
            pseudonym_created = True

        await self._insert_consent(user_id, consent)

        logger.info(
            "privacy_user_created",
            user_id=user_id,
            pseudonym_created=pseudonym_created,
            retention=consent.data_retention_preference.value,
        )
        return PrivacyUserResult(
            user_id=user_id,
            email=request.email,
            user_confirmed=sign_up.user_confirmed,
            profile=profile,
            pseudonym_created=pseudonym_created,
            scheduled_deletion=scheduled_deletion,
        )

    async def _insert_consent(self, user_id: str, consent: ConsentRecord) -> dict[str, Any]:
        rows = await self._db.insert(
            CONSENT_TABLE,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "consent_version": consent.consent_version,
                "consent_data": consent.model_dump(mode="json"),
                "consent_hash": consent_hash(user_id, consent),
                "timestamp": consent.consent_timestamp,
            },
        )
        return rows[0]

    async def record_consent(self, user_id: str, consent: ConsentRecord) -> dict[str, Any]:
        """
        Record a new consent decision and apply it.

        The profile's consent version and retention schedule are updated;
        granting analytics creates a pseudonym, revoking it deactivates the
        user's pseudonyms.

        Raises:
            ProfileNotFoundError: If the user has no profile
        """
        profile = await self._get_profile(user_id)
        record = await self._insert_consent(user_id, consent)

        await self._db.update(
            PROFILES_TABLE,
            {
                "consent_version": consent.consent_version,
                "consent_timestamp": consent.consent_timestamp,
                "data_retention_preference": consent.data_retention_preference.value,
                "scheduled_deletion": calculate_deletion_date(consent.data_retention_preference),
            },
            QueryOptions.where(user_id=user_id),
        )

        has_pseudonym = await self.get_user_pseudonym(user_id) is not None
        if consent.data_processing_purposes.anonymous_analytics and not has_pseudonym:
            await self._create_pseudonym(user_id, profile.get("university_code"), profile.get("cohort"))
        elif not consent.data_processing_purposes.anonymous_analytics and has_pseudonym:
            await self._deactivate_pseudonym(user_id, profile)

        logger.info("consent_recorded", user_id=user_id, version=consent.consent_version)
        return record

    async def get_consent(self, user_id: str) -> ConsentRecord | None:
        """The user's most recent consent decision."""
        options = QueryOptions.where(user_id=user_id)
        options.order_by = [OrderBy(column="timestamp", ascending=False)]
        options.limit = 1
        row = (await self._db.select(CONSENT_TABLE, options)).first()
        if row is None:
            return None
        return ConsentRecord.model_validate(row["consent_data"])

    async def withdraw_consent(self, user_id: str, withdrawal: ConsentWithdrawal) -> dict[str, Any]:
        """
        Switch off optional purposes.

        Personal wellness processing cannot be withdrawn here; that is
        account deletion.

        Raises:
            ProfileNotFoundError: If the user has no profile
        """
        current = await self.get_consent(user_id) or ConsentRecord()
        purposes = current.data_processing_purposes.model_copy(
            update={
                name: False
                for name, withdraw in withdrawal.model_dump().items()
                if withdraw
            }
        )
        updated = current.model_copy(
            update={
                "consent_timestamp": datetime.now(UTC),
                "data_processing_purposes": purposes,
            }
        )
        record = await self.record_consent(user_id, updated)
        logger.info(
            "consent_withdrawn",
            user_id=user_id,
            purposes=[name for name, withdraw in withdrawal.model_dump().items() if withdraw],
        )
        return record

    # =========================================================================
    # Pseudonyms
    # =========================================================================

    async def has_profile(self, user_id: str) -> bool:
        return await self._db.select_one(PROFILES_TABLE, user_id=user_id) is not None

    async def _get_profile(self, user_id: str) -> dict[str, Any]:
        profile = await self._db.select_one(PROFILES_TABLE, user_id=user_id)
        if profile is None:
            raise ProfileNotFoundError(f"No profile for user {user_id}")
        return profile

    async def _create_pseudonym(
        self,
        user_id: str,
        university_code: str | None,
        cohort: str | None,
    ) -> str:
        month = month_key()
        user_hash = self._pseudonyms.user_hash(user_id, month)

        await self._db.upsert(
            PSEUDONYMS_TABLE,
            {
                "user_hash": user_hash,
                "university_code_hash": (
                    self._pseudonyms.university_hash(university_code) if university_code else None
                ),
                "cohort_hash": (
                    self._pseudonyms.cohort_hash(university_code, cohort or DEFAULT_COHORT)
                    if university_code
                    else None
                ),
                "created_month": month,
                "is_active": True,
            },
            on_conflict="user_hash",
        )
        await self._db.update(
            PROFILES_TABLE,
            {"pseudonym_month": month},
            QueryOptions.where(user_id=user_id),
        )
        logger.debug("pseudonym_created", created_month=month)
        return user_hash

    async def _deactivate_pseudonym(self, user_id: str, profile: dict[str, Any]) -> int:
        month = profile.get("pseudonym_month")
        if not month:
            return 0
        rows = await self._db.update(
            PSEUDONYMS_TABLE,
            {"is_active": False},
            QueryOptions.where(user_hash=self._pseudonyms.user_hash(user_id, month)),
        )
        return len(rows)

    async def get_user_pseudonym(self, user_id: str) -> str | None:
        """
        The user's active analytics pseudonym.

        Returns:
            The user_hash, or None when the user has no active pseudonym
        """
        profile = await self._db.select_one(PROFILES_TABLE, user_id=user_id)
        if profile is None or not profile.get("pseudonym_month"):
            return None

        user_hash = self._pseudonyms.user_hash(user_id, profile["pseudonym_month"])
        row = await self._db.select_one(PSEUDONYMS_TABLE, user_hash=user_hash, is_active=True)
        return user_hash if row else None

    # =========================================================================
    # Analytics domain
    # =========================================================================

    async def create_privacy_assessment(
        self,
        user_id: str,
        request: PrivacyAssessmentCreate,
        completion_status: str = "pending",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Record a pseudonymous session with week-level timing.

        Raises:
            ConsentRequiredError: If the user has no active pseudonym
        """
        user_hash = await self.get_user_pseudonym(user_id)
        if user_hash is None:
            raise ConsentRequiredError("User not consented for analytics")

        now = now or datetime.now(UTC)
        rows = await self._db.insert(
            PRIVACY_SESSIONS_TABLE,
            {
                "id": str(uuid.uuid4()),
                "user_hash": user_hash,
                "session_type": request.session_type,
                "completion_status": completion_status,
                "mood_before_category": request.mood_before.value if request.mood_before else None,
                "mood_after_category": request.mood_after.value if request.mood_after else None,
                "assessment_duration_minutes": request.assessment_duration_minutes,
                "created_week": week_key(now),
                "time_of_day": TimeOfDay.from_hour(now.hour).value,
            },
        )
        return rows[0]

    async def record_wellness_score(
        self,
        privacy_session_id: str,
        score: int,
        uncertainty: float,
        previous_score: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Attach a categorical score to a pseudonymous session."""
        category = score_category(score, previous_score)
        trend = None
        if previous_score is not None:
            if score > previous_score:
                trend = "improving"
            elif score < previous_score:
                trend = "declining"
            else:
                trend = "stable"

        rows = await self._db.insert(
            WELLNESS_SCORES_TABLE,
            {
                "id": str(uuid.uuid4()),
                "session_id": privacy_session_id,
                "score_category": category.value,
                "confidence_level": confidence_level(uncertainty).value,
                "trend_direction": trend,
                "created_week": week_key(now or datetime.now(UTC)),
            },
        )
        return rows[0]

    async def get_user_wellness_data(self, user_id: str) -> UserWellnessData:
        """
        The user's own pseudonymous sessions (latest 50) and their scores.

        Raises:
            ConsentRequiredError: If the user has no active pseudonym
        """
        user_hash = await self.get_user_pseudonym(user_id)
        if user_hash is None:
            raise ConsentRequiredError("User not found in analytics")

        options = QueryOptions.where(user_hash=user_hash)
        options.order_by = [OrderBy(column="created_week", ascending=False)]
        options.limit = WELLNESS_HISTORY_LIMIT
        sessions = (await self._db.select(PRIVACY_SESSIONS_TABLE, options)).data

        scores: list[dict[str, Any]] = []
        if sessions:
            score_options = QueryOptions(
                filters={
                    "session_id": QueryFilter(operator="in", value=[s["id"] for s in sessions]),
                },
                order_by=[OrderBy(column="created_week", ascending=False)],
            )
            scores = (await self._db.select(WELLNESS_SCORES_TABLE, score_options)).data

        return UserWellnessData(sessions=sessions, scores=scores)

    # =========================================================================
    # Export & deletion
    # =========================================================================

    async def _collect_user_data(self, user_id: str) -> dict[str, list[dict[str, Any]]]:
        bundle: dict[str, list[dict[str, Any]]] = {}
        for table in USER_DATA_TABLES:
            rows = (await self._db.select(table, QueryOptions.where(user_id=user_id))).data
            bundle[table] = [
                {k: v for k, v in row.items() if k not in EXPORT_REDACTED_COLUMNS}
                for row in rows
            ]
        return bundle

    async def export_user_data(
        self,
        user_id: str,
        ip_address: str | None = None,
        user_roles: list[str] | None = None,
    ) -> DataExportResult:
        """
        Bundle the user's identity-domain data and pseudonymous history as
        JSON in storage and return a signed download URL.

        Raises:
            ProfileNotFoundError: If the user has no profile
        """
        await self._get_profile(user_id)

        bundle: dict[str, Any] = await self._collect_user_data(user_id)
        user_hash = await self.get_user_pseudonym(user_id)
        if user_hash is not None:
            bundle["analytics"] = (await self.get_user_wellness_data(user_id)).model_dump()

        exported_at = datetime.now(UTC)
        export_id = f"export_{exported_at.strftime('%Y%m%dT%H%M%SZ')}_{uuid.uuid4().hex[:8]}"
        document = {
            "export_id": export_id,
            "user_id": user_id,
            "exported_at": exported_at.isoformat(),
            "data": bundle,
        }
        data = json.dumps(document, default=str, indent=2).encode("utf-8")

        bucket = settings.aws.s3_bucket_name
        key = f"exports/{user_id}/{export_id}.json"
        await self._backend.storage.upload(
            bucket,
            key,
            data,
            content_type="application/json",
            metadata={"export-id": export_id, "user-id": user_id},
        )
        expires_in = settings.privacy.export_url_ttl_seconds
        url = await self._backend.storage.get_signed_url(bucket, key, expires_in=expires_in)

        record_counts = {
            table: len(rows) for table, rows in bundle.items() if isinstance(rows, list)
        }
        await self._audit.log(
            AuditAction.PHI_EXPORT,
            "user_data",
            user_id=user_id,
            resource_id=export_id,
            ip_address=ip_address,
            user_roles=user_roles,
            details={"records": record_counts, "size_bytes": len(data)},
            risk_level=RiskLevel.MEDIUM,
        )
        logger.info("user_data_exported", user_id=user_id, export_id=export_id, size_bytes=len(data))

        return DataExportResult(
            export_id=export_id,
            bucket=bucket,
            key=key,
            download_url=url,
            expires_in=expires_in,
            record_counts=record_counts,
        )

    async def _create_compliance_backup(self, user_id: str) -> str:
        bundle = await self._collect_user_data(user_id)
        backup_id = f"backup_{user_id}_{int(datetime.now(UTC).timestamp() * 1000)}"
        data = json.dumps({"backup_id": backup_id, "data": bundle}, default=str).encode("utf-8")
        await self._backend.storage.upload(
            settings.aws.s3_bucket_name,
            f"compliance-backups/{user_id}/{backup_id}.json",
            data,
            content_type="application/json",
            metadata={
                "backup-id": backup_id,
                "checksum": hashlib.sha256(data).hexdigest(),
            },
        )
        return backup_id

    async def delete_user_data(
        self,
        user_id: str,
        reason: str,
        ip_address: str | None = None,
    ) -> DeletionResult:
        """
        Erase a user's identity-domain data.

        Steps: compliance backup, identity-domain row deletion, auth
        identity deletion, pseudonym deactivation (analytics rows are kept
        unlinked), deletion certificate and DATA_DELETION audit row.
        """
        backup_id = await self._create_compliance_backup(user_id)

        profile = await self._db.select_one(PROFILES_TABLE, user_id=user_id)

        deleted: dict[str, int] = {}
        for table in USER_DATA_TABLES:
            deleted[table] = await self._db.delete(table, QueryOptions.where(user_id=user_id))

        try:
            await self._backend.auth.delete_user(user_id)
        except AuthError as e:
            logger.warning("auth_identity_delete_failed", user_id=user_id, error=str(e))

        deactivated = await self._deactivate_pseudonym(user_id, profile) if profile else 0

        created_at = datetime.now(UTC)
        digest = hashlib.sha256(f"{user_id}{reason}{backup_id}".encode()).hexdigest()[:8]
        certificate_id = f"cert_{int(created_at.timestamp() * 1000)}_{digest}"

        await self._db.insert(
            CERTIFICATES_TABLE,
            {
                "id": certificate_id,
                "subject_hash": self._pseudonyms.subject_hash(user_id),
                "reason": reason,
                "backup_id": backup_id,
                "deleted_records": deleted,
                "created_at": created_at,
            },
        )
        await self._audit.log(
            AuditAction.DATA_DELETION,
            "user_account",
            user_id=user_id,
            resource_id=user_id,
            ip_address=ip_address,
            details={
                "reason": reason,
                "backup_id": backup_id,
                "certificate_id": certificate_id,
                "deleted_records": deleted,
            },
            risk_level=RiskLevel.HIGH,
        )
        logger.info(
            "user_data_deleted",
            certificate_id=certificate_id,
            deleted_records=sum(deleted.values()),
        )

        return DeletionResult(
            deletion_certificate_id=certificate_id,
            backup_id=backup_id,
            deleted_records=deleted,
            pseudonyms_deactivated=deactivated,
        )
