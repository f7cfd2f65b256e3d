"""
lai-privacy: privacy core for a local-first chat application

Passphrase-derived authenticated encryption, an append-only audit trail,
and a policy-gated service that ties them together.
"""

__version__ = "0.1.0"
__author__ = "LAI Contributors"

from typing import Optional

from .encryption import (
    EncryptionService,
    EncryptedEnvelope,
    PrivacyError,
    EncryptionError,
    NotInitializedError,
    DecryptionError,
    SerializationError,
    ALGORITHM,
    AUTH_TAG_LENGTH,
)
from .audit import (
    AuditService,
    AuditLogEntry,
    AuditAction,
    AuditStatus,
    AuditStats,
    AuditLogStore,
    InMemoryAuditLogStore,
    anonymize_ip,
)
from .privacy import (
    PrivacyService,
    PrivacySettings,
    PrivacyStatus,
    EncryptionDisabledError,
)
from .logging import configure_logging, get_logger, log_context


def create_privacy_service(settings: Optional[PrivacySettings] = None) -> PrivacyService:
    """
    Build a PrivacyService wired to fresh encryption and audit services.

    Each call returns an independent instance (one per session).
    """
    encryption = EncryptionService()
    audit = AuditService(encryption_service=encryption)
    return PrivacyService(encryption, audit, settings=settings)


__all__ = [
    "EncryptionService",
    "EncryptedEnvelope",
    "PrivacyError",
    "EncryptionError",
    "NotInitializedError",
    "DecryptionError",
    "SerializationError",
    "ALGORITHM",
    "AUTH_TAG_LENGTH",
    "AuditService",
    "AuditLogEntry",
    "AuditAction",
    "AuditStatus",
    "AuditStats",
    "AuditLogStore",
    "InMemoryAuditLogStore",
    "anonymize_ip",
    "PrivacyService",
    "PrivacySettings",
    "PrivacyStatus",
    "EncryptionDisabledError",
    "create_privacy_service",
    "configure_logging",
    "get_logger",
    "log_context",
    "__version__",
]
