"""Admin service API routes."""

from services.admin.routes import backups, compliance, database, incidents


__all__ = ["backups", "compliance", "database", "incidents"]
