"""
Audit Module
============

Audit trail writer and the IP/user blocklist.

Usage:
    from shared.audit import AuditLogger
    from shared.models.security import AuditAction, RiskLevel

    audit = AuditLogger(get_database())
    await audit.log(AuditAction.LOGIN_SUCCESS, "auth", user_id=user.id, ip_address=ip)
"""

from shared.audit.blocklist import BLOCKED_IPS_TABLE, SUSPENSIONS_TABLE, Blocklist
from shared.audit.trail import AUDIT_TABLE, SYSTEM_ACTOR, AuditLogger


__all__ = [
    "AuditLogger",
    "AUDIT_TABLE",
    "SYSTEM_ACTOR",
    "Blocklist",
    "BLOCKED_IPS_TABLE",
    "SUSPENSIONS_TABLE",
]
