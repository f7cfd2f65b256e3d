"""
Audit trail for privacy-relevant search operations

Records searches, filters, result views, history deletions and exports as
an append-only session log. Supports statistics, retention pruning and
JSON/CSV export.

The audit trail must never break the operation it records: writers and
pruning log internal failures and return normally.
"""

import ipaddress
import json
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .encryption import EncryptedEnvelope, EncryptionService
from .logging import get_logger, log_context

logger = get_logger()

DEFAULT_MAX_LOGS = 1000

CSV_HEADERS = ["id", "timestamp", "action", "query", "status", "resultCount", "executionTimeMs"]


class AuditAction(Enum):
    """Kinds of audited operations."""
    SEARCH = "search"
    FILTER = "filter"
    VIEW_RESULT = "view_result"
    DELETE_HISTORY = "delete_history"
    EXPORT = "export"
    FILTER_CLEAR = "filter_clear"


class AuditStatus(Enum):
    """Outcome of an audited operation."""
    SUCCESS = "success"
    ERROR = "error"


def anonymize_ip(address: str) -> str:
    """
    Drop the host part of an IP address.

    IPv4 keeps the /24 network, IPv6 keeps the /48 network. Values that
    are not IP addresses are replaced entirely.
    """
    try:
        ip = ipaddress.ip_address(address.strip())
    except ValueError:
        return "[ANONYMIZED]"
    prefix = 24 if ip.version == 4 else 48
    network = ipaddress.ip_network(f"{ip}/{prefix}", strict=False)
    return str(network.network_address)


def _payload_to_dict(value: Any) -> Any:
    if isinstance(value, EncryptedEnvelope):
        return value.to_dict()
    return value


def _json_safe(value: Any) -> Any:
    # Dates, UUIDs and similar filter values are stored by their string form
    return json.loads(json.dumps(value, default=str))


@dataclass
class AuditLogEntry:
    """One audited operation. Timestamps are epoch milliseconds."""
    id: str
    timestamp: int
    action: AuditAction
    status: AuditStatus = AuditStatus.SUCCESS
    query: Optional[Union[str, EncryptedEnvelope]] = None
    details: Dict[str, Any] = field(default_factory=dict)
    result_count: Optional[int] = None
    execution_time_ms: Optional[float] = None
    error_message: Optional[str] = None
    ip_address: Optional[str] = None

    @property
    def is_encrypted(self) -> bool:
        """Whether the query or filter payload is stored encrypted."""
        if isinstance(self.query, EncryptedEnvelope):
            return True
        return isinstance(self.details.get("filters"), EncryptedEnvelope)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "action": self.action.value,
            "status": self.status.value,
            "query": _payload_to_dict(self.query),
            "details": {k: _payload_to_dict(v) for k, v in self.details.items()},
            "result_count": self.result_count,
            "execution_time_ms": self.execution_time_ms,
            "error_message": self.error_message,
            "ip_address": self.ip_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        """Deserialize from dictionary."""
        query = data.get("query")
        if EncryptedEnvelope.is_envelope(query):
            query = EncryptedEnvelope.from_dict(query)
        details = dict(data.get("details") or {})
        if EncryptedEnvelope.is_envelope(details.get("filters")):
            details["filters"] = EncryptedEnvelope.from_dict(details["filters"])
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            action=AuditAction(data["action"]),
            status=AuditStatus(data.get("status", "success")),
            query=query,
            details=details,
            result_count=data.get("result_count"),
            execution_time_ms=data.get("execution_time_ms"),
            error_message=data.get("error_message"),
            ip_address=data.get("ip_address"),
        )


@dataclass
class AuditStats:
    """Aggregated audit statistics."""
    total_logs: int = 0
    search_count: int = 0
    filter_count: int = 0
    delete_count: int = 0
    error_count: int = 0
    average_execution_time: float = 0.0
    oldest_log: Optional[int] = None
    newest_log: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_logs": self.total_logs,
            "search_count": self.search_count,
            "filter_count": self.filter_count,
            "delete_count": self.delete_count,
            "error_count": self.error_count,
            "average_execution_time": self.average_execution_time,
            "oldest_log": self.oldest_log,
            "newest_log": self.newest_log,
        }


class AuditLogStore(ABC):
    """
    Storage backend for audit entries.

    Implementations keep entries in insertion order.
    """

    @abstractmethod
    def append(self, entry: AuditLogEntry) -> None:
        """Add an entry at the end."""
        pass

    @abstractmethod
    def entries(self) -> List[AuditLogEntry]:
        """Return a snapshot of all entries, oldest first."""
        pass

    @abstractmethod
    def remove_where(self, predicate: Callable[[AuditLogEntry], bool]) -> int:
        """Remove matching entries and return how many were removed."""
        pass

    @abstractmethod
    def drop_oldest(self, count: int) -> None:
        """Remove the ``count`` oldest entries."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove all entries."""
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class InMemoryAuditLogStore(AuditLogStore):
    """List-backed store; entries live for the session only."""

    def __init__(self):
        self._entries: List[AuditLogEntry] = []

    def append(self, entry: AuditLogEntry) -> None:
        self._entries.append(entry)

    def entries(self) -> List[AuditLogEntry]:
        return list(self._entries)

    def remove_where(self, predicate: Callable[[AuditLogEntry], bool]) -> int:
        initial = len(self._entries)
        self._entries = [e for e in self._entries if not predicate(e)]
        return initial - len(self._entries)

    def drop_oldest(self, count: int) -> None:
        if count > 0:
            del self._entries[:count]

    def clear(self) -> None:
        self._entries = []

    def __len__(self) -> int:
        return len(self._entries)


class AuditService:
    """
    Append-only log of privacy-relevant operations.

    The service always records; deciding whether an operation should be
    audited is the caller's job.
    """

    def __init__(
        self,
        encryption_service: Optional[EncryptionService] = None,
        store: Optional[AuditLogStore] = None,
        max_logs: int = DEFAULT_MAX_LOGS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize audit service.

        Args:
            encryption_service: Used to encrypt payloads once encryption is enabled
            store: Entry storage (in-memory by default)
            max_logs: Maximum number of retained entries; oldest are dropped first
            clock: Returns the current time in seconds since the epoch
        """
        self.encryption_service = encryption_service
        self.store = store if store is not None else InMemoryAuditLogStore()
        self.max_logs = max_logs
        self._clock = clock
        self._encryption_enabled = False
        self._anonymize_ip = False

    @property
    def encryption_enabled(self) -> bool:
        return self._encryption_enabled

    def enable_encryption(self, enabled: bool) -> None:
        """Encrypt query and filter payloads written from now on."""
        self._encryption_enabled = bool(enabled)

    def anonymize_ip_addresses(self, enabled: bool) -> None:
        """Anonymize IP addresses written from now on."""
        self._anonymize_ip = bool(enabled)

    def log_search(
        self,
        query: str,
        result_count: int,
        execution_time_ms: float,
        status: Union[str, AuditStatus] = AuditStatus.SUCCESS,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Log a search action."""
        self._add_log(
            AuditAction.SEARCH,
            status=status,
            query=query,
            result_count=result_count,
            execution_time_ms=execution_time_ms,
            error_message=error_message,
            ip_address=ip_address,
        )

    def log_filter(
        self,
        filters: Dict[str, Any],
        status: Union[str, AuditStatus] = AuditStatus.SUCCESS,
        error_message: Optional[str] = None,
    ) -> None:
        """Log a filter action."""
        self._add_log(
            AuditAction.FILTER,
            status=status,
            details={"filters": filters},
            error_message=error_message,
        )

    def log_view_result(self, result_id: str, result_type: str) -> None:
        """Log a result view (result_type is "conversation" or "message")."""
        self._add_log(
            AuditAction.VIEW_RESULT,
            details={"resultId": result_id, "resultType": result_type},
        )

    def log_delete_history(self, count: int) -> None:
        """Log a history deletion."""
        self._add_log(AuditAction.DELETE_HISTORY, details={"deletedCount": count})

    def log_clear_filters(self) -> None:
        """Log clearing of all active filters."""
        self._add_log(AuditAction.FILTER_CLEAR)

    def log_export(self, format: str, item_count: int) -> None:
        """Log an export action."""
        self._add_log(AuditAction.EXPORT, details={"format": format, "itemCount": item_count})

    def _add_log(
        self,
        action: AuditAction,
        status: Union[str, AuditStatus] = AuditStatus.SUCCESS,
        query: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        result_count: Optional[int] = None,
        execution_time_ms: Optional[float] = None,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        with log_context(action=action.value):
            try:
                details = dict(details or {})
                if query is not None:
                    query = self._protect(query)
                if "filters" in details:
                    details["filters"] = self._protect_object(_json_safe(details["filters"]))
                if ip_address and self._anonymize_ip:
                    ip_address = anonymize_ip(ip_address)

                timestamp = self._now_ms()
                entry = AuditLogEntry(
                    id=f"{timestamp}-{secrets.token_hex(5)}",
                    timestamp=timestamp,
                    action=action,
                    status=AuditStatus(status),
                    query=query,
                    details=details,
                    result_count=result_count,
                    execution_time_ms=execution_time_ms,
                    error_message=error_message,
                    ip_address=ip_address,
                )

                self.store.append(entry)
                overflow = len(self.store) - self.max_logs
                if overflow > 0:
                    self.store.drop_oldest(overflow)
            except Exception:
                logger.exception("Failed to write audit entry")

    def _encryption_ready(self) -> bool:
        if not self._encryption_enabled:
            return False
        if self.encryption_service is None or not self.encryption_service.is_initialized():
            logger.warning("Audit encryption enabled but no key available; storing plain payload")
            return False
        return True

    def _protect(self, text: str) -> Union[str, EncryptedEnvelope]:
        if not self._encryption_ready():
            return text
        return self.encryption_service.encrypt(text)

    def _protect_object(self, value: Any) -> Any:
        if not self._encryption_ready():
            return value
        return self.encryption_service.encrypt_object(value)

    def _now_ms(self) -> int:
        return int(round(self._clock() * 1000))

    def get_logs(self, limit: Optional[int] = None) -> List[AuditLogEntry]:
        """Get audit logs in insertion order, optionally only the most recent."""
        logs = self.store.entries()
        if limit:
            return logs[-limit:]
        return logs

    def get_logs_by_action(
        self,
        action: Union[str, AuditAction],
        limit: Optional[int] = None,
    ) -> List[AuditLogEntry]:
        """Get logs for a specific action type."""
        action = AuditAction(action)
        filtered = [log for log in self.store.entries() if log.action == action]
        if limit:
            filtered = filtered[-limit:]
        return filtered

    def get_logs_by_date_range(self, start_ms: int, end_ms: int) -> List[AuditLogEntry]:
        """Get logs with start_ms <= timestamp <= end_ms."""
        return [log for log in self.store.entries() if start_ms <= log.timestamp <= end_ms]

    def get_logs_by_query(self, query: str) -> List[AuditLogEntry]:
        """Get search logs whose plain-text query matches exactly."""
        return [log for log in self.store.entries() if isinstance(log.query, str) and log.query == query]

    def get_stats(self) -> AuditStats:
        """Get audit statistics."""
        logs = self.store.entries()
        search_logs = [log for log in logs if log.action == AuditAction.SEARCH]

        execution_times = [
            log.execution_time_ms for log in search_logs
            if log.execution_time_ms is not None
        ]
        average = sum(execution_times) / len(execution_times) if execution_times else 0.0

        return AuditStats(
            total_logs=len(logs),
            search_count=len(search_logs),
            filter_count=sum(1 for log in logs if log.action == AuditAction.FILTER),
            delete_count=sum(1 for log in logs if log.action == AuditAction.DELETE_HISTORY),
            error_count=sum(1 for log in logs if log.status == AuditStatus.ERROR),
            average_execution_time=average,
            oldest_log=logs[0].timestamp if logs else None,
            newest_log=logs[-1].timestamp if logs else None,
        )

    def export_logs(self, format: str = "json") -> str:
        """
        Export logs as text.

        Args:
            format: "json" (array of entries); any other value exports CSV
        """
        if format == "json":
            return json.dumps(
                [log.to_dict() for log in self.store.entries()],
                indent=2,
                ensure_ascii=False,
                default=str,
            )
        return self._format_csv(self.store.entries())

    def _format_csv(self, logs: List[AuditLogEntry]) -> str:
        lines = [",".join(CSV_HEADERS)]
        for log in logs:
            if isinstance(log.query, EncryptedEnvelope):
                query = json.dumps(log.query.to_dict(), separators=(",", ":"))
            else:
                query = log.query or ""
            row = [
                log.id,
                _iso_timestamp(log.timestamp),
                log.action.value,
                query,
                log.status.value,
                "" if log.result_count is None else str(log.result_count),
                "" if log.execution_time_ms is None else str(log.execution_time_ms),
            ]
            lines.append(",".join(_escape_csv(value) for value in row))
        return "\n".join(lines)

    def clear_logs(self) -> None:
        """Clear all audit logs."""
        self.store.clear()

    def clear_old_logs(self, max_age_ms: int) -> int:
        """
        Remove logs older than max_age_ms.

        Returns:
            Number of entries removed
        """
        try:
            now = self._now_ms()
            removed = self.store.remove_where(lambda log: now - log.timestamp > max_age_ms)
        except Exception:
            logger.exception("Failed to prune audit log")
            return 0
        if removed:
            logger.info(f"Pruned {removed} audit entries", max_age_ms=max_age_ms)
        return removed


def _iso_timestamp(timestamp_ms: int) -> str:
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _escape_csv(value: str) -> str:
    value = value.replace('"', '""')
    if "," in value or "\n" in value or '"' in value or "\r" in value:
        return f'"{value}"'
    return value
