"""
Tests for PrivacyService

Tests for:
- Settings management
- Query encryption (fails open)
- Result encryption (fails closed)
- Audit gating
- Retention enforcement
- Teardown of each subsystem
"""

import json
from datetime import date

import pytest

from lai_privacy import create_privacy_service
from lai_privacy.audit import AuditAction, AuditService, AuditStatus
from lai_privacy.encryption import (
    DecryptionError,
    EncryptedEnvelope,
    EncryptionService,
    NotInitializedError,
    SerializationError,
)
from lai_privacy.privacy import (
    MS_PER_DAY,
    EncryptionDisabledError,
    PrivacyService,
    PrivacySettings,
    PrivacyStatus,
)


PASSWORD = "test-privacy-password-123"


class FakeClock:
    """Controllable clock returning seconds since the epoch"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_days(self, days: float) -> None:
        self.now += days * MS_PER_DAY / 1000


def make_service(clock=None, settings=None):
    encryption = EncryptionService()
    if clock is None:
        audit = AuditService(encryption_service=encryption)
    else:
        audit = AuditService(encryption_service=encryption, clock=clock)
    return PrivacyService(encryption, audit, settings=settings)


class TestConstruction:
    """Tests for dependency injection"""

    def test_requires_encryption_service(self):
        with pytest.raises(ValueError, match="encryption_service is required"):
            PrivacyService(None, AuditService())

    def test_requires_audit_service(self):
        with pytest.raises(ValueError, match="audit_service is required"):
            PrivacyService(EncryptionService(), None)

    def test_instances_are_independent(self):
        """Services built by the factory share no state"""
        first = create_privacy_service()
        second = create_privacy_service()
        first.initialize_encryption(PASSWORD)
        first.log_search("q", 1, 1)

        assert not second.get_status().is_encryption_initialized
        assert second.get_status().total_audit_logs == 0

    def test_initial_settings_propagate(self):
        """Constructor settings reach the audit service"""
        service = make_service(settings=PrivacySettings(encryption_enabled=True))
        assert service.audit_service.encryption_enabled


class TestSettings:
    """Tests for settings management"""

    def setup_method(self):
        self.service = make_service()

    def test_default_settings(self):
        """Defaults match the documented policy"""
        settings = self.service.get_settings()
        assert settings.encryption_enabled is False
        assert settings.audit_logging_enabled is True
        assert settings.encrypt_query_strings is True
        assert settings.encrypt_results is False
        assert settings.anonymize_ip_address is True
        assert settings.data_retention_days == 90
        assert settings.auto_delete_history_days == 90

    def test_update_settings(self):
        """Partial update keeps other fields"""
        self.service.update_settings(encryption_enabled=True, data_retention_days=30)

        settings = self.service.get_settings()
        assert settings.encryption_enabled is True
        assert settings.data_retention_days == 30
        assert settings.audit_logging_enabled is True

    def test_partial_update(self):
        """Only named fields change"""
        self.service.update_settings(encrypt_query_strings=False)

        settings = self.service.get_settings()
        assert settings.encrypt_query_strings is False
        assert settings.encrypt_results is False

    def test_unknown_setting_rejected(self):
        """Typos are reported"""
        with pytest.raises(ValueError, match="Unknown privacy settings: encrypt_querys"):
            self.service.update_settings(encrypt_querys=True)

    def test_negative_retention_rejected(self):
        """Negative day counts are invalid"""
        with pytest.raises(ValueError, match="data_retention_days"):
            self.service.update_settings(data_retention_days=-1)
        assert self.service.get_settings().data_retention_days == 90

    def test_get_settings_returns_copy(self):
        """Mutating the returned settings has no effect"""
        settings = self.service.get_settings()
        settings.audit_logging_enabled = False
        assert self.service.get_settings().audit_logging_enabled is True

    def test_encryption_flag_propagates_to_audit(self):
        """Toggling encryption reaches the audit service"""
        self.service.update_settings(encryption_enabled=True)
        assert self.service.audit_service.encryption_enabled
        self.service.update_settings(encryption_enabled=False)
        assert not self.service.audit_service.encryption_enabled

    def test_settings_round_trip(self):
        """Settings serialize for host persistence"""
        settings = PrivacySettings(encrypt_results=True, data_retention_days=7)
        assert PrivacySettings.from_dict(settings.to_dict()) == settings

    def test_from_dict_ignores_unknown_keys(self):
        """Stale keys in persisted settings are ignored"""
        settings = PrivacySettings.from_dict({"encryption_enabled": True, "legacy": 1})
        assert settings.encryption_enabled is True
        assert settings.data_retention_days == 90


class TestInitialization:
    """Tests for initialize_encryption()"""

    def test_initialize_encryption(self):
        """Initialization enables encryption everywhere"""
        service = make_service()
        assert not service.get_status().is_encryption_initialized

        service.initialize_encryption(PASSWORD)

        assert service.get_status().is_encryption_initialized
        assert service.get_settings().encryption_enabled
        assert service.audit_service.encryption_enabled


class TestQueryEncryption:
    """Tests for encrypt_query()/decrypt_query()"""

    def setup_method(self):
        self.service = make_service()

    def test_passthrough_when_disabled(self):
        """Encryption off returns the same string"""
        query = "test search query"
        assert self.service.encrypt_query(query) is query

    def test_passthrough_when_query_encryption_off(self):
        """encrypt_query_strings=False returns the query"""
        self.service.initialize_encryption(PASSWORD)
        self.service.update_settings(encrypt_query_strings=False)
        assert self.service.encrypt_query("q") == "q"

    def test_encrypt_when_enabled(self):
        """Encryption on returns an envelope"""
        self.service.initialize_encryption(PASSWORD)

        encrypted = self.service.encrypt_query("secret search")
        assert isinstance(encrypted, EncryptedEnvelope)
        assert encrypted.encrypted

    def test_decrypt_query(self):
        """Round trip through the service"""
        self.service.initialize_encryption(PASSWORD)
        encrypted = self.service.encrypt_query("test search")
        assert self.service.decrypt_query(encrypted) == "test search"

    def test_decrypt_query_dict_form(self):
        """Persisted dict envelopes decrypt"""
        self.service.initialize_encryption(PASSWORD)
        encrypted = self.service.encrypt_query("stored")
        assert self.service.decrypt_query(encrypted.to_dict()) == "stored"

    def test_decrypt_plain_query(self):
        """Plain strings pass through"""
        assert self.service.decrypt_query("plain") == "plain"

    def test_fails_open_without_key(self):
        """Enabled but uninitialized encryption returns the plain query"""
        self.service.update_settings(encryption_enabled=True, encrypt_query_strings=True)
        assert self.service.encrypt_query("test") == "test"

    def test_fails_open_on_error(self):
        """Any encryption error returns the plain query"""

        class BrokenEncryption(EncryptionService):
            def encrypt(self, data):
                raise RuntimeError("cipher unavailable")

        service = PrivacyService(BrokenEncryption(), AuditService())
        service.update_settings(encryption_enabled=True)
        assert service.encrypt_query("still searchable") == "still searchable"

    def test_decrypt_requires_enabled(self):
        """Envelopes cannot be decrypted while encryption is disabled"""
        self.service.initialize_encryption(PASSWORD)
        encrypted = self.service.encrypt_query("secret")
        self.service.update_settings(encryption_enabled=False)

        with pytest.raises(EncryptionDisabledError, match="not enabled"):
            self.service.decrypt_query(encrypted)

    def test_decrypt_wrong_key_raises(self):
        """Decryption errors propagate"""
        self.service.initialize_encryption(PASSWORD)
        encrypted = self.service.encrypt_query("secret")

        other = make_service()
        other.initialize_encryption("different-password")
        with pytest.raises(DecryptionError):
            other.decrypt_query(encrypted)

    @pytest.mark.parametrize("value", [12345, ["a", "b"]])
    def test_decrypt_non_envelope_raises(self, value):
        """Values that are neither strings nor envelopes fail decryption"""
        self.service.initialize_encryption(PASSWORD)
        with pytest.raises(DecryptionError, match="Malformed envelope"):
            self.service.decrypt_query(value)

    def test_encrypted_queries_counted(self):
        """Status counts distinct encrypted queries"""
        self.service.initialize_encryption(PASSWORD)
        self.service.encrypt_query("a")
        self.service.encrypt_query("b")
        self.service.encrypt_query("a")
        assert self.service.get_status().encrypted_queries == 2

    def test_settings_change_not_retroactive(self):
        """Existing envelopes stay decryptable after toggling query encryption"""
        self.service.initialize_encryption(PASSWORD)
        encrypted = self.service.encrypt_query("kept")
        self.service.update_settings(encrypt_query_strings=False)
        assert self.service.decrypt_query(encrypted) == "kept"


class TestResultEncryption:
    """Tests for encrypt_results()/decrypt_results()"""

    def setup_method(self):
        self.service = make_service()
        self.service.initialize_encryption(PASSWORD)

    def test_encrypt_results(self):
        """Results become an envelope"""
        results = {"conversations": [{"id": "conv1", "title": "Test"}], "messages": [], "total": 1}
        encrypted = self.service.encrypt_results(results)

        assert encrypted.encrypted
        assert encrypted.iv
        assert encrypted.salt

    def test_decrypt_results(self):
        """Results round trip"""
        original = {"data": [1, 2, 3], "count": 3, "title": "Überblick"}
        encrypted = self.service.encrypt_results(original)
        assert self.service.decrypt_results(encrypted) == original

    def test_encrypt_results_without_key(self):
        """Encrypting results without a key fails closed"""
        self.service.clear_encryption()
        with pytest.raises(NotInitializedError):
            self.service.encrypt_results({"data": "test"})

    def test_decrypt_results_without_key(self):
        """Decrypting results without a key fails closed"""
        encrypted = self.service.encrypt_results({"data": "test"})
        self.service.clear_encryption()
        with pytest.raises(NotInitializedError):
            self.service.decrypt_results(encrypted)

    def test_decrypt_tampered_results(self):
        """Tampered results raise instead of returning garbage"""
        encrypted = self.service.encrypt_results({"data": "test"})
        first = "1" if encrypted.encrypted[0] != "1" else "2"
        tampered = EncryptedEnvelope(first + encrypted.encrypted[1:], encrypted.iv, encrypted.salt)
        with pytest.raises(DecryptionError):
            self.service.decrypt_results(tampered)

    def test_unserializable_results(self):
        """Non-JSON results raise"""
        with pytest.raises(SerializationError):
            self.service.encrypt_results({"when": object()})

    def test_query_and_results_asymmetry(self):
        """Without a key, queries degrade while results raise"""
        service = make_service(settings=PrivacySettings(encryption_enabled=True))
        assert service.encrypt_query("q") == "q"
        with pytest.raises(NotInitializedError):
            service.encrypt_results(["r"])


class TestAuditGating:
    """Tests for the log_* forwarding"""

    def setup_method(self):
        self.service = make_service()

    def test_log_search(self):
        """Search is recorded"""
        self.service.log_search("test query", 10, 150)

        logs = self.service.get_audit_logs()
        assert len(logs) == 1
        assert logs[0].action == AuditAction.SEARCH
        assert logs[0].query == "test query"

    def test_log_search_error(self):
        """Error message marks the entry as failed"""
        self.service.log_search("bad", 0, 5, error="timeout")

        log = self.service.get_audit_logs()[0]
        assert log.status == AuditStatus.ERROR
        assert log.error_message == "timeout"

    def test_log_filter(self):
        """Filter is recorded"""
        self.service.log_filter({"provider": "ollama"})
        assert self.service.get_audit_logs()[0].action == AuditAction.FILTER

    def test_log_filter_error(self):
        """Filter errors are recorded"""
        self.service.log_filter({"provider": "x"}, error="unknown provider")
        assert self.service.get_audit_logs()[0].status == AuditStatus.ERROR

    def test_log_view_and_delete(self):
        """Views, deletions, exports and filter clears are recorded"""
        self.service.log_view_result("msg-1", "message")
        self.service.log_delete_history(4)
        self.service.log_export("json", 2)
        self.service.log_clear_filters()

        actions = [log.action for log in self.service.get_audit_logs()]
        assert actions == [
            AuditAction.VIEW_RESULT,
            AuditAction.DELETE_HISTORY,
            AuditAction.EXPORT,
            AuditAction.FILTER_CLEAR,
        ]

    def test_disabled_audit_logging(self):
        """Nothing is recorded while audit logging is off"""
        self.service.update_settings(audit_logging_enabled=False)

        self.service.log_search("q", 1, 1)
        self.service.log_filter({"a": 1})
        self.service.log_view_result("c", "conversation")
        self.service.log_delete_history(1)
        self.service.log_export("csv", 1)
        self.service.log_clear_filters()

        assert self.service.get_audit_logs() == []

    def test_reenabling_is_not_retroactive(self):
        """Skipped calls stay skipped"""
        self.service.update_settings(audit_logging_enabled=False)
        self.service.log_search("skipped", 1, 1)
        self.service.update_settings(audit_logging_enabled=True)
        self.service.log_search("recorded", 1, 1)

        assert [log.query for log in self.service.get_audit_logs()] == ["recorded"]

    def test_queries_encrypted_in_audit(self):
        """Audit payloads are encrypted once encryption is initialized"""
        self.service.initialize_encryption(PASSWORD)
        self.service.log_search("private", 1, 1)

        log = self.service.get_audit_logs()[0]
        assert isinstance(log.query, EncryptedEnvelope)
        assert self.service.encryption_service.decrypt(log.query) == "private"

    def test_ip_anonymized_by_default(self):
        """Default policy anonymizes IP addresses"""
        self.service.log_search("q", 1, 1, ip_address="203.0.113.77")
        assert self.service.get_audit_logs()[0].ip_address == "203.0.113.0"

    def test_ip_kept_when_anonymization_off(self):
        """Anonymization can be turned off"""
        self.service.update_settings(anonymize_ip_address=False)
        self.service.log_search("q", 1, 1, ip_address="203.0.113.77")
        assert self.service.get_audit_logs()[0].ip_address == "203.0.113.77"


class TestStatusAndExport:
    """Tests for status and audit pass-throughs"""

    def setup_method(self):
        self.service = make_service()

    def test_get_status(self):
        """Status reflects current state"""
        self.service.log_search("q", 1, 1)
        status = self.service.get_status()

        assert isinstance(status, PrivacyStatus)
        assert status.to_dict() == {
            "is_encryption_initialized": False,
            "audit_logging_enabled": True,
            "total_audit_logs": 1,
            "encrypted_queries": 0,
        }

    def test_audit_stats(self):
        """Stats pass through"""
        self.service.log_search("a", 1, 10)
        self.service.log_search("b", 1, 30)
        stats = self.service.get_audit_stats()
        assert stats.search_count == 2
        assert stats.average_execution_time == pytest.approx(20)

    def test_export_json(self):
        """JSON export matches get_audit_logs()"""
        self.service.log_search("a", 1, 1)
        self.service.log_filter({"x": 1})
        data = json.loads(self.service.export_audit_logs("json"))
        assert len(data) == len(self.service.get_audit_logs())

    def test_export_csv(self):
        """CSV export starts with the header"""
        self.service.log_search("a", 1, 1)
        assert self.service.export_audit_logs("csv").startswith("id,timestamp,action")

    def test_export_unknown_format(self):
        """Unsupported formats are rejected before reaching the audit trail"""
        with pytest.raises(ValueError, match="Unsupported export format: xml"):
            self.service.export_audit_logs("xml")

    def test_export_with_date_filters(self):
        """Filters holding dates still export"""
        self.service.log_filter({"date_from": date(2024, 1, 1)})
        data = json.loads(self.service.export_audit_logs("json"))
        assert data[0]["details"]["filters"] == {"date_from": "2024-01-01"}


class TestRetention:
    """Tests for enforce_retention()"""

    def test_enforce_retention(self):
        """Entries older than the retention window are removed"""
        clock = FakeClock()
        service = make_service(clock=clock)
        service.update_settings(data_retention_days=30)

        service.log_search("old", 1, 1)
        clock.advance_days(20)
        service.log_search("recent", 1, 1)
        clock.advance_days(15)

        removed = service.enforce_retention()

        assert removed == 1
        assert [log.query for log in service.get_audit_logs()] == ["recent"]

    def test_nothing_to_remove(self):
        """Fresh entries survive"""
        service = make_service()
        service.log_search("new", 1, 1)
        assert service.enforce_retention() == 0


class TestTeardown:
    """Tests for clear_encryption()/clear_audit_logs()"""

    def test_clear_encryption(self):
        """Clearing drops the key and disables encryption"""
        service = make_service()
        service.initialize_encryption(PASSWORD)
        service.encrypt_query("q")

        service.clear_encryption()

        status = service.get_status()
        assert not status.is_encryption_initialized
        assert status.encrypted_queries == 0
        assert not service.get_settings().encryption_enabled
        assert not service.audit_service.encryption_enabled
        assert service.encrypt_query("q") == "q"

    def test_clear_audit_logs(self):
        """Clearing logs leaves encryption alone"""
        service = make_service()
        service.initialize_encryption(PASSWORD)
        service.log_search("q", 1, 1)

        service.clear_audit_logs()

        assert service.get_audit_logs() == []
        assert service.get_status().is_encryption_initialized


class TestEndToEnd:
    """Full session scenario"""

    def test_password_change_invalidates_results(self):
        """Results encrypted under pw1 cannot be read after switching to pw2"""
        service = make_service()
        service.initialize_encryption("pw1")
        encrypted = service.encrypt_results({"answer": "hello"})
        assert service.decrypt_results(encrypted) == {"answer": "hello"}

        service.clear_encryption()
        service.initialize_encryption("pw2")

        with pytest.raises(DecryptionError):
            service.decrypt_results(encrypted)
