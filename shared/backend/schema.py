"""
PostgreSQL Schema
=================

Table definitions for the postgresql and aurora-serverless providers.

The database service reflects tables at runtime; these definitions are
only used to create them. Every table has a text ``id`` primary key
defaulting to a random UUID, and ``created_at`` / ``updated_at``
timestamps maintained by the database service.

Version: 0.1.0
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.schema import SchemaItem

from shared.logging import get_logger


logger = get_logger(__name__)

metadata = MetaData()


def _table(name: str, *items: SchemaItem, **kwargs: object) -> Table:
    """Table with the common id and timestamp columns."""
    return Table(
        name,
        metadata,
        Column("id", Text, primary_key=True, server_default=text("gen_random_uuid()::text")),
        *items,
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        **kwargs,
    )


def _ts(name: str, nullable: bool = True) -> Column:
    return Column(name, DateTime(timezone=True), nullable=nullable)


# =============================================================================
# Identity domain
# =============================================================================

auth_users = _table(
    "auth_users",
    Column("email", Text, nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", Text),
    Column("last_name", Text),
    Column("email_confirmed", Boolean, nullable=False, server_default=text("false")),
    Column("disabled", Boolean, nullable=False, server_default=text("false")),
)

auth_codes = _table(
    "auth_codes",
    Column("email", Text, nullable=False),
    Column("purpose", Text, nullable=False),
    Column("code_hash", Text, nullable=False),
    _ts("expires_at", nullable=False),
    Column("used", Boolean, nullable=False, server_default=text("false")),
    Index("ix_auth_codes_email_purpose", "email", "purpose"),
)

profiles = _table(
    "profiles",
    Column("user_id", Text, nullable=False, unique=True),
    Column("email", Text, nullable=False),
    Column("first_name", Text),
    Column("last_name", Text),
    Column("display_name", Text),
    Column("university_id", Text),
    Column("university_code", Text),
    Column("cohort", Text),
    Column("baseline_established", Boolean, nullable=False, server_default=text("false")),
    Column("consent_version", Text),
    _ts("consent_timestamp"),
    Column("data_retention_preference", Text),
    _ts("scheduled_deletion"),
    Column("pseudonym_month", Text),
)

user_roles = _table(
    "user_roles",
    Column("user_id", Text, nullable=False),
    Column("role", Text, nullable=False),
    UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
)

consent_records = _table(
    "consent_records",
    Column("user_id", Text, nullable=False, index=True),
    Column("consent_version", Text, nullable=False),
    Column("consent_data", JSONB, nullable=False),
    Column("consent_hash", Text, nullable=False),
    _ts("timestamp", nullable=False),
)

assessment_sessions = _table(
    "assessment_sessions",
    Column("user_id", Text, nullable=False, index=True),
    Column("session_type", Text, nullable=False),
    Column("assessment_type", Text),
    Column("category", Text),
    Column("status", Text, nullable=False, server_default="pending"),
    Column("mood_before", Integer),
    Column("mood_after", Integer),
    Column("text_data", JSONB),
    Column("audio_data", JSONB),
    Column("visual_data", JSONB),
    Column("reflection_notes", Text),
    Column("error_message", Text),
    _ts("started_at"),
    _ts("completed_at"),
)

fusion_outputs = _table(
    "fusion_outputs",
    Column("session_id", Text, nullable=False, index=True),
    Column("user_id", Text, nullable=False, index=True),
    Column("score", Integer, nullable=False),
    Column("phq2_component", Float),
    Column("gad2_component", Float),
    Column("mood_component", Float),
    Column("uncertainty", Float),
    Column("analysis", JSONB),
)

user_baselines = _table(
    "user_baselines",
    Column("user_id", Text, nullable=False, unique=True),
    Column("session_id", Text),
    Column("baseline_score", Integer, nullable=False),
    Column("phq2_total", Integer),
    Column("gad2_total", Integer),
    Column("mood_scale", Integer),
    _ts("established_at"),
)

buddy_invites = _table(
    "buddy_invites",
    Column("user_id", Text, nullable=False, index=True),
    Column("invitee_name", Text, nullable=False),
    Column("contact_type", Text, nullable=False),
    Column("contact_value", Text, nullable=False),
    Column("contact_value_masked", Text),
    Column("personal_message", Text),
    Column("status", Text, nullable=False),
    Column("token_hash", Text, nullable=False, unique=True),
    _ts("sent_at"),
    _ts("expires_at", nullable=False),
    Column("resend_count", Integer, nullable=False, server_default=text("0")),
    _ts("last_resend_at"),
)

buddies = _table(
    "buddies",
    Column("user_id", Text, nullable=False, index=True),
    Column("invite_id", Text),
    Column("name", Text, nullable=False),
    Column("email", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("preference_order", Integer, nullable=False, server_default=text("0")),
    Column("opt_out_token_hash", Text, unique=True),
)

# =============================================================================
# Analytics domain (pseudonymous)
# =============================================================================

user_pseudonyms = _table(
    "user_pseudonyms",
    Column("user_hash", Text, nullable=False, unique=True),
    Column("university_code_hash", Text),
    Column("cohort_hash", Text),
    Column("created_month", Text, nullable=False),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
)

privacy_assessment_sessions = _table(
    "privacy_assessment_sessions",
    Column("user_hash", Text, nullable=False, index=True),
    Column("session_type", Text, nullable=False),
    Column("completion_status", Text, nullable=False),
    Column("mood_before_category", Text),
    Column("mood_after_category", Text),
    Column("assessment_duration_minutes", Integer),
    Column("created_week", Text, nullable=False),
    Column("time_of_day", Text),
)

wellness_scores = _table(
    "wellness_scores",
    Column("session_id", Text, nullable=False, index=True),
    Column("score_category", Text, nullable=False),
    Column("confidence_level", Text, nullable=False),
    Column("trend_direction", Text),
    Column("created_week", Text, nullable=False),
)

deletion_certificates = _table(
    "deletion_certificates",
    Column("subject_hash", Text, nullable=False),
    Column("reason", Text, nullable=False),
    Column("backup_id", Text),
    Column("deleted_records", JSONB, nullable=False),
)

# =============================================================================
# Security domain
# =============================================================================

audit_logs = _table(
    "audit_logs",
    Column("user_id", Text, nullable=False, index=True),
    Column("action", Text, nullable=False),
    Column("resource", Text, nullable=False),
    Column("resource_id", Text),
    Column("ip_address", Text),
    Column("user_roles", JSONB, nullable=False, server_default=text("'[]'::jsonb")),
    Column("details", JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    Column("success", Boolean, nullable=False, server_default=text("true")),
    Column("risk_level", Text, nullable=False),
    _ts("timestamp", nullable=False),
    Index("ix_audit_logs_timestamp", "timestamp"),
)

security_incidents = _table(
    "security_incidents",
    Column("fingerprint", Text, nullable=False, index=True),
    Column("type", Text, nullable=False),
    Column("severity", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text, nullable=False),
    _ts("detected_at", nullable=False),
    Column("detected_by", Text, nullable=False),
    Column("affected_systems", JSONB, nullable=False),
    Column("affected_users", JSONB, nullable=False),
    Column("indicators", JSONB, nullable=False),
    Column("response", JSONB, nullable=False),
    Column("timeline", JSONB, nullable=False),
    Column("metadata", JSONB, nullable=False),
)

blocked_ips = _table(
    "blocked_ips",
    Column("ip_address", Text, nullable=False, index=True),
    Column("reason", Text, nullable=False),
    Column("incident_id", Text),
    Column("active", Boolean, nullable=False, server_default=text("true")),
    _ts("blocked_at", nullable=False),
    _ts("expires_at"),
)

user_suspensions = _table(
    "user_suspensions",
    Column("user_id", Text, nullable=False, index=True),
    Column("reason", Text, nullable=False),
    Column("incident_id", Text),
    Column("active", Boolean, nullable=False, server_default=text("true")),
    _ts("suspended_at", nullable=False),
    _ts("expires_at"),
)

backups = _table(
    "backups",
    Column("bucket", Text, nullable=False),
    Column("key", Text, nullable=False),
    Column("tables", JSONB, nullable=False),
    Column("row_counts", JSONB, nullable=False),
    Column("size_bytes", Integer, nullable=False),
    Column("checksum", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("created_by", Text, nullable=False),
    _ts("expires_at", nullable=False),
    _ts("restored_at"),
)

compliance_controls = _table(
    "compliance_controls",
    Column("framework_id", Text, nullable=False),
    Column("control_id", Text, nullable=False),
    Column("status", Text, nullable=False),
    _ts("last_checked"),
    _ts("next_check_due"),
    Column("evidence", JSONB, nullable=False, server_default=text("'[]'::jsonb")),
)

compliance_assessments = _table(
    "compliance_assessments",
    Column("framework_id", Text, nullable=False, index=True),
    Column("assessment_type", Text, nullable=False),
    _ts("started_at", nullable=False),
    _ts("completed_at"),
    Column("assessed_by", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("results", JSONB, nullable=False),
    Column("overall_score", Integer, nullable=False),
    Column("recommendations", JSONB, nullable=False),
    _ts("next_assessment_due", nullable=False),
)

compliance_reports = _table(
    "compliance_reports",
    Column("framework_id", Text, nullable=False, index=True),
    Column("report_type", Text, nullable=False),
    _ts("generated_at", nullable=False),
    Column("generated_by", Text, nullable=False),
    Column("period", JSONB, nullable=False),
    Column("summary", JSONB, nullable=False),
    Column("sections", JSONB, nullable=False),
    Column("recommendations", JSONB, nullable=False),
    Column("action_items", JSONB, nullable=False),
)


async def create_schema(engine: AsyncEngine, drop_existing: bool = False) -> list[str]:
    """
    Create every table that does not exist yet.

    Returns:
        Names of the tables in the schema
    """
    async with engine.begin() as conn:
        if drop_existing:
            await conn.run_sync(metadata.drop_all)
            logger.warning("schema_dropped", tables=len(metadata.tables))
        await conn.run_sync(metadata.create_all)

    logger.info("schema_created", tables=len(metadata.tables))
    return sorted(metadata.tables)
