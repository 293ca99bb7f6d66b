"""
Mind Measure Shared Library
===========================

Common code shared by the Mind Measure services.

Modules:
    - config: Configuration management with Pydantic Settings
    - logging: Structured logging with structlog
    - auth: API session tokens and route protection
    - backend: Provider-neutral database, auth, storage, realtime and functions
    - privacy: Pseudonymisation, consent, export and deletion
    - audit: Audit trail and blocklist
    - scoring: Baseline assessment scoring
    - models: Shared Pydantic models

Version: 0.1.0
"""

__version__ = "0.1.0"
__author__ = "Mind Measure Team"

from shared.config import settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "__version__",
]
