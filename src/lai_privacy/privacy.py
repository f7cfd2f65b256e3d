"""
Privacy Controls for search and chat data

Orchestrates encryption and audit logging behind a single policy
configuration. The rest of the application calls into PrivacyService
before persisting or displaying sensitive query/result data; it never
talks to EncryptionService or AuditService directly.

Policy:
- Query strings fail open: if encryption is requested but fails, the
  query is returned unencrypted so search keeps working.
- Result payloads fail closed: encrypting or decrypting results without
  a key raises, results are never silently exposed or dropped.
- Audit calls are forwarded only while audit logging is enabled.
"""

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, List, Optional, Union

from .audit import AuditLogEntry, AuditService, AuditStats, AuditStatus
from .encryption import (
    EncryptedEnvelope,
    EncryptionService,
    NotInitializedError,
    PrivacyError,
)
from .logging import get_logger, log_context

logger = get_logger()

MS_PER_DAY = 24 * 60 * 60 * 1000

EXPORT_FORMATS = ("json", "csv")


class EncryptionDisabledError(PrivacyError):
    """Raised when an envelope must be decrypted while encryption is disabled"""
    pass


@dataclass
class PrivacySettings:
    """Privacy policy configuration. Persisting it is the host's job."""
    encryption_enabled: bool = False
    audit_logging_enabled: bool = True
    encrypt_query_strings: bool = True    # Encrypt search queries in storage
    encrypt_results: bool = False         # Encrypt result data
    data_retention_days: int = 90         # Keep audit logs for N days
    anonymize_ip_address: bool = True     # Hide IP addresses in audit logs
    auto_delete_history_days: Optional[int] = 90

    def __post_init__(self):
        if self.data_retention_days < 0:
            raise ValueError("data_retention_days must be >= 0")
        if self.auto_delete_history_days is not None and self.auto_delete_history_days < 0:
            raise ValueError("auto_delete_history_days must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrivacySettings":
        """Deserialize from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def merge(self, **changes) -> "PrivacySettings":
        """
        Return a copy with the given fields replaced.

        Raises:
            ValueError: On unknown fields or invalid values
        """
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown privacy settings: {', '.join(sorted(unknown))}")
        return replace(self, **changes)


@dataclass
class PrivacyStatus:
    """Snapshot of the privacy subsystem state."""
    is_encryption_initialized: bool
    audit_logging_enabled: bool
    total_audit_logs: int
    encrypted_queries: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PrivacyService:
    """
    High-level privacy manager combining encryption, audit logging and
    retention under one settings object.
    """

    def __init__(
        self,
        encryption_service: EncryptionService,
        audit_service: AuditService,
        settings: Optional[PrivacySettings] = None,
    ):
        """
        Initialize privacy service with required dependencies.

        Args:
            encryption_service: EncryptionService holding the master key
            audit_service: AuditService receiving audit entries
            settings: Initial policy (defaults if omitted)
        """
        if encryption_service is None:
            raise ValueError("encryption_service is required")
        if audit_service is None:
            raise ValueError("audit_service is required")

        self.encryption_service = encryption_service
        self.audit_service = audit_service
        self._settings = settings or PrivacySettings()
        self._encrypted_cache: Dict[str, EncryptedEnvelope] = {}

        self.audit_service.enable_encryption(self._settings.encryption_enabled)
        self.audit_service.anonymize_ip_addresses(self._settings.anonymize_ip_address)

    def initialize_encryption(self, password: str) -> None:
        """Derive the master key and turn encryption on."""
        self.encryption_service.initialize(password)
        self._settings = replace(self._settings, encryption_enabled=True)
        self.audit_service.enable_encryption(True)
        logger.info("Encryption initialized")

    def update_settings(self, **changes) -> None:
        """
        Merge changes into the current settings.

        Example:
            privacy.update_settings(encrypt_query_strings=False, data_retention_days=30)

        Raises:
            ValueError: On unknown fields or invalid values
        """
        previous = self._settings
        self._settings = previous.merge(**changes)

        if self._settings.encryption_enabled != previous.encryption_enabled:
            self.audit_service.enable_encryption(self._settings.encryption_enabled)
        self.audit_service.anonymize_ip_addresses(self._settings.anonymize_ip_address)
        logger.debug("Privacy settings updated", fields=sorted(changes))

    def get_settings(self) -> PrivacySettings:
        """Get a copy of the current settings."""
        return replace(self._settings)

    def get_status(self) -> PrivacyStatus:
        """Get privacy status."""
        return PrivacyStatus(
            is_encryption_initialized=self.encryption_service.is_initialized(),
            audit_logging_enabled=self._settings.audit_logging_enabled,
            total_audit_logs=len(self.audit_service.get_logs()),
            encrypted_queries=len(self._encrypted_cache),
        )

    def encrypt_query(self, query: str) -> Union[str, EncryptedEnvelope]:
        """
        Encrypt a search query if the policy asks for it.

        Returns the query unchanged when encryption is off, and also when
        encryption fails for any reason.
        """
        if not self._settings.encryption_enabled or not self._settings.encrypt_query_strings:
            logger.debug("Query encryption skipped by policy")
            return query

        try:
            encrypted = self.encryption_service.encrypt(query)
        except Exception as e:
            logger.warning(f"Failed to encrypt query, using plain text: {type(e).__name__}")
            return query

        self._encrypted_cache[self.encryption_service.hash(query)] = encrypted
        return encrypted

    def decrypt_query(self, data: Union[str, EncryptedEnvelope, Dict[str, Any]]) -> str:
        """
        Decrypt a query produced by encrypt_query().

        Raises:
            EncryptionDisabledError: If data is encrypted but encryption is disabled
            EncryptionError: If decryption fails
        """
        if isinstance(data, str):
            return data

        if not self._settings.encryption_enabled:
            raise EncryptionDisabledError("Encryption is not enabled")

        if isinstance(data, dict):
            data = EncryptedEnvelope.from_dict(data)

        with log_context(operation="decrypt_query"):
            try:
                return self.encryption_service.decrypt(data)
            except PrivacyError as e:
                logger.error(f"Failed to decrypt query: {e}")
                raise

    def encrypt_results(self, results: Any) -> EncryptedEnvelope:
        """
        Encrypt search results.

        Raises:
            NotInitializedError: If no master key is held
            SerializationError: If results are not JSON serializable
        """
        if not self.encryption_service.is_initialized():
            raise NotInitializedError()

        with log_context(operation="encrypt_results"):
            try:
                return self.encryption_service.encrypt_object(results)
            except PrivacyError as e:
                logger.error(f"Failed to encrypt results: {e}")
                raise

    def decrypt_results(self, encrypted: Union[EncryptedEnvelope, Dict[str, Any]]) -> Any:
        """
        Decrypt search results.

        Raises:
            NotInitializedError: If no master key is held
            DecryptionError: If the envelope does not authenticate
            SerializationError: If the payload is not valid JSON
        """
        if not self.encryption_service.is_initialized():
            raise NotInitializedError()

        with log_context(operation="decrypt_results"):
            try:
                return self.encryption_service.decrypt_object(encrypted)
            except PrivacyError as e:
                logger.error(f"Failed to decrypt results: {e}")
                raise

    def log_search(
        self,
        query: str,
        result_count: int,
        execution_time_ms: float,
        error: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Log a search operation."""
        if not self._settings.audit_logging_enabled:
            return
        self.audit_service.log_search(
            query,
            result_count,
            execution_time_ms,
            status=AuditStatus.ERROR if error else AuditStatus.SUCCESS,
            error_message=error,
            ip_address=ip_address,
        )

    def log_filter(self, filters: Dict[str, Any], error: Optional[str] = None) -> None:
        """Log a filter operation."""
        if not self._settings.audit_logging_enabled:
            return
        self.audit_service.log_filter(
            filters,
            status=AuditStatus.ERROR if error else AuditStatus.SUCCESS,
            error_message=error,
        )

    def log_view_result(self, result_id: str, result_type: str) -> None:
        """Log viewing a result."""
        if not self._settings.audit_logging_enabled:
            return
        self.audit_service.log_view_result(result_id, result_type)

    def log_delete_history(self, count: int) -> None:
        """Log history deletion."""
        if not self._settings.audit_logging_enabled:
            return
        self.audit_service.log_delete_history(count)

    def log_clear_filters(self) -> None:
        """Log clearing of search filters."""
        if not self._settings.audit_logging_enabled:
            return
        self.audit_service.log_clear_filters()

    def log_export(self, format: str, item_count: int) -> None:
        """Log an export of search data."""
        if not self._settings.audit_logging_enabled:
            return
        self.audit_service.log_export(format, item_count)

    def get_audit_logs(self, limit: Optional[int] = None) -> List[AuditLogEntry]:
        """Get audit logs."""
        return self.audit_service.get_logs(limit)

    def get_audit_stats(self) -> AuditStats:
        """Get audit statistics."""
        return self.audit_service.get_stats()

    def export_audit_logs(self, format: str = "json") -> str:
        """
        Export audit logs as JSON or CSV.

        Raises:
            ValueError: If format is not "json" or "csv"
        """
        if format not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {format}")
        return self.audit_service.export_logs(format)

    def enforce_retention(self) -> int:
        """
        Enforce the data retention policy on the audit log.

        Returns:
            Number of entries removed
        """
        retention_ms = self._settings.data_retention_days * MS_PER_DAY
        with logger.timed("enforce_retention"):
            return self.audit_service.clear_old_logs(retention_ms)

    def clear_encryption(self) -> None:
        """Clear encryption keys from memory and turn encryption off."""
        self.encryption_service.clear()
        self._settings = replace(self._settings, encryption_enabled=False)
        self._encrypted_cache.clear()
        self.audit_service.enable_encryption(False)
        logger.info("Encryption cleared")

    def clear_audit_logs(self) -> None:
        """Clear all audit logs."""
        self.audit_service.clear_logs()
