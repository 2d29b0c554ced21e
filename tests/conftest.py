"""
Shared pytest fixtures for the PersistWatch test suite.

Autouse fixtures below isolate tests from live application data:
  - Audit logger      -> temp directory  (prevents fake events in ./audit_logs)
  - Data directory    -> temp directory  (prevents writes to data/persistwatch.db)
  - API singletons    -> reset per test  (monitor, preferences, containment service)
"""

import pytest

from persistwatch.core.models import PersistenceCategory, PersistenceItem, TrustLevel


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, anything that calls ``get_audit_logger().log_event(...)``
    writes into the real ``./audit_logs/`` directory.
    """
    import persistwatch.core.audit_log as audit_mod

    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_data_dir(tmp_path, monkeypatch):
    """Point every default-path database at a temp directory."""
    monkeypatch.setenv("PERSISTWATCH_DATA_DIR", str(tmp_path / "data"))
    (tmp_path / "data").mkdir(exist_ok=True)


@pytest.fixture(autouse=True)
def _isolate_singletons():
    """Reset the process-wide monitor and containment service."""
    import persistwatch.api.monitor_routes as monitor_mod
    import persistwatch.containment.containment_service as service_mod

    old = (monitor_mod._monitor, monitor_mod._preferences, service_mod._service)
    monitor_mod._monitor = None
    monitor_mod._preferences = None
    service_mod._service = None

    yield

    monitor_mod._monitor, monitor_mod._preferences, service_mod._service = old


# ── Item factories ───────────────────────────────────────────────────

def make_item(identifier="com.example.agent", category=PersistenceCategory.LAUNCH_AGENTS, **kwargs):
    """PersistenceItem with sensible defaults; override any field."""
    kwargs.setdefault("name", identifier.rsplit(".", 1)[-1])
    return PersistenceItem(identifier=identifier, category=category, **kwargs)


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def unsigned_tmp_item():
    """Unsigned keep-alive agent running from /tmp."""
    return make_item(
        identifier="com.evil.update",
        executable_path="/tmp/update",
        plist_path="/Users/test/Library/LaunchAgents/com.evil.update.plist",
        run_at_load=True,
        keep_alive=True,
        trust_level=TrustLevel.UNSIGNED,
    )
