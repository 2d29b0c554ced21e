"""
Tests for ContainmentService: contain / release / extend / verify, restart
recovery and rule expiry.

The network blocker is a MagicMock so no firewall is touched; plists and
binaries are real files under tmp_path so renames and hashing are real.
"""

import os
import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from persistwatch.containment.containment_database import ContainmentDatabase
from persistwatch.containment.containment_service import (
    CONTAINED_SUFFIX,
    ContainmentService,
    get_containment_service,
    set_containment_service,
)
from persistwatch.containment.models import (
    ContainmentAction,
    ContainmentActionType,
    ContainmentStatus,
    IntegrityStatus,
    NetworkMethod,
    NetworkRule,
    ResultKind,
)
from persistwatch.containment.network_blocker import NetworkBlocker
from persistwatch.core.exceptions import (
    AlreadyContainedError,
    ExternalToolFailedError,
    NotContainedError,
    StoreError,
)
from persistwatch.core.config import MonitorConfiguration
from persistwatch.core.models import PersistenceCategory
from persistwatch.core.preferences import Preferences

PLIST_TEXT = "<?xml version=\"1.0\"?><plist><dict><key>Label</key><string>com.evil.update</string></dict></plist>"


def _fake_rule(path, timeout=None):
    return NetworkRule(
        anchor=f"socketfilterfw:{os.path.basename(path)}",
        binary_path=path,
        method=NetworkMethod.SOCKETFILTERFW,
        expires_at=datetime.now() + timedelta(seconds=timeout) if timeout is not None else None,
    )


@pytest.fixture
def database(tmp_path):
    return ContainmentDatabase(db_path=str(tmp_path / "containment.db"))


@pytest.fixture
def blocker():
    b = MagicMock(spec=NetworkBlocker)
    b.block_binary.side_effect = _fake_rule
    b.restore_active_rules.return_value = (0, 0)
    return b


@pytest.fixture
def service(database, blocker):
    return ContainmentService(
        database=database,
        executor=MagicMock(),
        blocker=blocker,
        process_snapshot=lambda path: [],
    )


@pytest.fixture
def files(tmp_path):
    agents = tmp_path / "LaunchAgents"
    agents.mkdir()
    plist = agents / "com.evil.update.plist"
    plist.write_text(PLIST_TEXT, encoding="utf-8")
    binary = tmp_path / "update"
    binary.write_bytes(b"payload")
    return plist, binary


@pytest.fixture
def item(item_factory, files):
    plist, binary = files
    return item_factory("com.evil.update", plist_path=str(plist), executable_path=str(binary))


class TestContain:

    def test_full_containment(self, service, item, files, blocker, database):
        plist, binary = files
        result = service.contain(item)

        assert result.kind is ResultKind.SUCCESS
        assert result.status is ContainmentStatus.ACTIVE
        assert result.warnings == []
        assert not plist.exists()
        assert (plist.parent / (plist.name + CONTAINED_SUFFIX)).read_text() == PLIST_TEXT
        assert binary.exists()
        blocker.block_binary.assert_called_once_with(str(binary), timeout=86400.0)

        state = service.get_state(item.identifier)
        assert state.persistence_disabled and state.network_blocked
        assert state.plist_backup == PLIST_TEXT
        assert state.binary_hash == result.action.binary_hash
        assert service.is_contained(item.identifier)
        assert service.contained_items == {item.identifier}
        assert database.get_network_rule(item.identifier).id == state.network_rule.id

        history = service.get_containment_history(item.identifier)
        assert [a.action_type for a in history] == [ContainmentActionType.CONTAIN]

    def test_custom_timeout(self, service, item, blocker):
        result = service.contain(item, timeout=600)
        assert blocker.block_binary.call_args.kwargs["timeout"] == 600
        remaining = (result.action.expires_at - datetime.now()).total_seconds()
        assert 590 < remaining <= 600

    def test_no_binary_is_partial(self, service, item_factory, files):
        plist, _ = files
        item = item_factory("com.evil.update", plist_path=str(plist))

        result = service.contain(item)

        assert result.kind is ResultKind.PARTIAL
        assert result.status is ContainmentStatus.PARTIAL
        assert result.warnings == ["No binary found - skipping network block"]
        assert (plist.parent / (plist.name + CONTAINED_SUFFIX)).exists()
        state = service.get_state(item.identifier)
        assert state.persistence_disabled is True
        assert state.network_blocked is False

    def test_missing_binary_file_is_partial(self, service, item_factory, files, tmp_path, blocker):
        plist, _ = files
        item = item_factory("com.evil.update", plist_path=str(plist),
                            executable_path=str(tmp_path / "gone"))

        result = service.contain(item)

        assert result.kind is ResultKind.PARTIAL
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("Network block failed:")
        blocker.block_binary.assert_not_called()

    def test_no_plist_is_partial(self, service, item_factory, files):
        _, binary = files
        result = service.contain(item_factory("com.evil.update", executable_path=str(binary)))
        assert result.kind is ResultKind.PARTIAL
        assert result.warnings == ["No plist found - skipping persistence disable"]
        assert service.get_state("com.evil.update").network_blocked

    def test_nothing_to_contain_fails(self, service, item_factory, database):
        result = service.contain(item_factory("com.evil.update"))

        assert result.kind is ResultKind.FAILURE
        assert not result.ok
        assert str(result.error) == "Both persistence disable and network block failed"
        assert len(result.warnings) == 2
        assert service.get_state("com.evil.update") is None
        assert database.get_containment_history("com.evil.update") == []

    def test_already_contained(self, service, item):
        service.contain(item)
        result = service.contain(item)
        assert result.kind is ResultKind.FAILURE
        assert isinstance(result.error, AlreadyContainedError)

    def test_process_snapshot_recorded(self, database, blocker, item):
        snapshot = MagicMock(return_value=[{"pid": 4242, "name": "update"}])
        svc = ContainmentService(database=database, executor=MagicMock(), blocker=blocker,
                                 process_snapshot=snapshot)
        result = svc.contain(item)
        assert result.action.details["processes"] == [{"pid": 4242, "name": "update"}]
        snapshot.assert_called_once_with(item.executable_path)

    def test_ledger_failure_rolls_back(self, service, item, files, database, blocker, monkeypatch):
        plist, _ = files
        monkeypatch.setattr(database, "save_containment_action",
                            MagicMock(side_effect=StoreError("database is locked")))

        result = service.contain(item)

        assert result.kind is ResultKind.FAILURE
        assert isinstance(result.error, StoreError)
        assert plist.read_text() == PLIST_TEXT
        blocker.unblock.assert_called_once()
        assert service.get_state(item.identifier) is None
        assert database.get_network_rule(item.identifier) is None

    def test_result_to_dict(self, service, item):
        d = service.contain(item).to_dict()
        assert d["result"] == "success"
        assert d["action"]["action_type"] == "contain"
        assert d["action"]["has_plist_backup"] is True
        assert d["error"] is None


class TestSingleSteps:

    def test_persistence_then_network(self, service, item, blocker):
        first = service.disable_persistence_only(item)
        assert first.kind is ResultKind.SUCCESS
        assert service.get_state(item.identifier).status is ContainmentStatus.PARTIAL
        blocker.block_binary.assert_not_called()

        second = service.block_network_only(item, timeout=60)
        assert second.kind is ResultKind.SUCCESS
        state = service.get_state(item.identifier)
        assert state.status is ContainmentStatus.ACTIVE
        assert state.plist_backup == PLIST_TEXT

    def test_repeat_step_rejected(self, service, item):
        service.block_network_only(item)
        result = service.block_network_only(item)
        assert isinstance(result.error, AlreadyContainedError)

    def test_network_only_needs_binary(self, service, item_factory):
        result = service.block_network_only(item_factory("com.x"))
        assert result.kind is ResultKind.FAILURE

    def test_network_only_block_failure(self, service, item, blocker):
        blocker.block_binary.side_effect = ExternalToolFailedError("socketfilterfw", "Error: unavailable")
        result = service.block_network_only(item)
        assert isinstance(result.error, ExternalToolFailedError)
        assert service.get_state(item.identifier) is None


class TestRelease:

    def test_release_restores_everything(self, service, item, files, blocker, database):
        plist, _ = files
        contained = service.contain(item)
        rule = service.get_state(item.identifier).network_rule

        result = service.release(item)

        assert result.kind is ResultKind.SUCCESS
        assert result.status is ContainmentStatus.RELEASED
        assert plist.read_text() == PLIST_TEXT
        assert not (plist.parent / (plist.name + CONTAINED_SUFFIX)).exists()
        blocker.unblock.assert_called_once_with(rule)
        assert service.get_state(item.identifier) is None
        assert database.get_network_rule(item.identifier) is None
        assert database.get_active_containment(item.identifier) is None

        history = service.get_containment_history(item.identifier)
        assert [a.action_type for a in history] == [ContainmentActionType.RELEASE, ContainmentActionType.CONTAIN]
        assert history[1].id == contained.action.id
        assert history[1].status is ContainmentStatus.RELEASED

    def test_recent_actions_across_items(self, service, item, database):
        service.contain(item)
        service.release(item)
        recent = database.get_recent_actions(limit=1)
        assert [a.action_type for a in recent] == [ContainmentActionType.RELEASE]
        assert len(database.get_recent_actions()) == 2

    def test_release_not_contained(self, service, item):
        result = service.release(item)
        assert isinstance(result.error, NotContainedError)

    def test_release_rewrites_from_backup(self, service, item, files):
        plist, _ = files
        service.contain(item)
        os.remove(str(plist) + CONTAINED_SUFFIX)

        result = service.release(item)
        assert result.kind is ResultKind.SUCCESS
        assert plist.read_text(encoding="utf-8") == PLIST_TEXT

    def test_release_with_failed_unblock_is_partial(self, service, item, blocker):
        service.contain(item)
        blocker.unblock.side_effect = ExternalToolFailedError("socketfilterfw", "Error: busy")

        result = service.release(item)

        assert result.kind is ResultKind.PARTIAL
        assert result.status is ContainmentStatus.RELEASED
        assert result.warnings[0].startswith("Failed to unblock network:")
        assert service.get_state(item.identifier) is None


class TestExtend:

    def test_extend_replaces_rule(self, service, item, blocker, database):
        service.contain(item)
        state = service.get_state(item.identifier)
        old_rule, old_expiry = state.network_rule, state.expires_at

        result = service.extend_timeout(item, 3600)

        assert result.kind is ResultKind.SUCCESS
        assert result.action.action_type is ContainmentActionType.EXTEND_TIMEOUT
        blocker.unblock.assert_called_once_with(old_rule)
        state = service.get_state(item.identifier)
        assert state.network_rule.id != old_rule.id
        assert state.expires_at == old_expiry + timedelta(seconds=3600)
        assert database.get_network_rule(item.identifier).id == state.network_rule.id
        assert database.get_active_containment(item.identifier).expires_at == state.expires_at

    def test_extend_persistence_only(self, service, item, blocker):
        service.disable_persistence_only(item)
        result = service.extend_timeout(item, 60)
        assert result.kind is ResultKind.SUCCESS
        blocker.block_binary.assert_not_called()
        assert service.get_state(item.identifier).expires_at is not None

    def test_extend_not_contained(self, service, item):
        assert isinstance(service.extend_timeout(item).error, NotContainedError)

    def test_failed_reblock_ends_network_only_containment(self, service, item, blocker, database):
        service.block_network_only(item)
        blocker.block_binary.side_effect = ExternalToolFailedError("socketfilterfw", "Error: unavailable")

        result = service.extend_timeout(item, 60)

        assert result.kind is ResultKind.FAILURE
        assert service.get_state(item.identifier) is None
        assert database.get_active_containment(item.identifier) is None
        assert service.get_containment_history(item.identifier)[0].status is ContainmentStatus.FAILED


class TestIntegrity:

    def test_match_then_mismatch(self, service, item, files):
        _, binary = files
        service.contain(item)
        assert service.verify_binary_integrity(item) is IntegrityStatus.MATCH

        binary.write_bytes(b"swapped payload")
        assert service.verify_binary_integrity(item) is IntegrityStatus.MISMATCH

    def test_unavailable(self, service, item, files):
        _, binary = files
        assert service.verify_binary_integrity(item) is IntegrityStatus.UNAVAILABLE

        service.contain(item)
        binary.unlink()
        assert service.verify_binary_integrity(item) is IntegrityStatus.UNAVAILABLE


class TestRecovery:

    def _restart(self, database, blocker):
        return ContainmentService(database=database, executor=MagicMock(), blocker=blocker,
                                  process_snapshot=lambda path: [])

    def test_state_survives_restart(self, service, item, files, database, blocker):
        plist, _ = files
        service.contain(item)

        restarted = self._restart(database, blocker)
        state = restarted.get_state(item.identifier)
        assert state is not None
        assert state.status is ContainmentStatus.ACTIVE
        assert state.plist_backup == PLIST_TEXT

        rebuilt = restarted.item_for_state(item.identifier)
        assert rebuilt.category is PersistenceCategory.LAUNCH_AGENTS
        assert rebuilt.executable_path == item.executable_path

        assert restarted.release(rebuilt).kind is ResultKind.SUCCESS
        assert plist.read_text() == PLIST_TEXT

    def test_expired_network_only_action_closed_on_load(self, database, blocker):
        database.save_containment_action(ContainmentAction(
            item_identifier="com.old",
            item_category="launch_agents",
            action_type=ContainmentActionType.NETWORK_BLOCK,
            status=ContainmentStatus.ACTIVE,
            timestamp=datetime.now() - timedelta(days=2),
            expires_at=datetime.now() - timedelta(days=1),
        ))

        restarted = self._restart(database, blocker)

        assert restarted.get_state("com.old") is None
        assert database.get_active_containment("com.old") is None
        assert database.get_containment_history("com.old")[0].status is ContainmentStatus.EXPIRED

    def test_expired_containment_keeps_persistence_half(self, database, blocker):
        database.save_containment_action(ContainmentAction(
            item_identifier="com.old",
            item_category="launch_agents",
            action_type=ContainmentActionType.CONTAIN,
            status=ContainmentStatus.ACTIVE,
            timestamp=datetime.now() - timedelta(days=2),
            plist_path="/Library/LaunchAgents/com.old.plist",
            expires_at=datetime.now() - timedelta(days=1),
            details={"persistence_disabled": True},
        ))

        restarted = self._restart(database, blocker)

        state = restarted.get_state("com.old")
        assert state.persistence_disabled is True
        assert state.network_blocked is False
        assert state.status is ContainmentStatus.PARTIAL
        assert database.get_active_containment("com.old") is not None

    def test_release_after_expiry_and_restart(self, service, item, files, database, blocker):
        plist, _ = files
        assert service.contain(item, timeout=0.01).kind is ResultKind.SUCCESS
        time.sleep(0.05)

        restarted = self._restart(database, blocker)
        state = restarted.get_state(item.identifier)
        assert state is not None
        assert state.persistence_disabled and not state.network_blocked

        result = restarted.release(restarted.item_for_state(item.identifier))

        assert result.kind is ResultKind.SUCCESS
        assert plist.read_text() == PLIST_TEXT
        assert not (plist.parent / (plist.name + CONTAINED_SUFFIX)).exists()

    def test_extend_after_expiry_counts_from_now(self, service, item, database, blocker):
        service.disable_persistence_only(item)
        database.update_open_expiry(item.identifier, datetime.now() - timedelta(days=1))
        restarted = self._restart(database, blocker)

        restarted.extend_timeout(restarted.item_for_state(item.identifier), 3600)

        remaining = (restarted.get_state(item.identifier).expires_at - datetime.now()).total_seconds()
        assert 3590 < remaining <= 3600

    def test_restore_reports_counts(self, service, blocker):
        blocker.restore_active_rules.return_value = (2, 1)
        assert service.restore() == {"restored_rules": 2, "purged_rules": 1, "loaded": 0}

    def test_item_for_unknown_state(self, service):
        assert service.item_for_state("nope") is None


class TestExpiry:

    def test_expired_rule_leaves_persistence_half(self, service, item, database):
        service.contain(item)
        rule = service.get_state(item.identifier).network_rule

        service.handle_rule_expired(rule)

        state = service.get_state(item.identifier)
        assert state.network_blocked is False
        assert state.status is ContainmentStatus.PARTIAL
        assert database.get_network_rule(item.identifier) is None

    def test_expired_network_only_containment_ends(self, service, item, database):
        service.block_network_only(item)
        rule = service.get_state(item.identifier).network_rule

        service.handle_rule_expired(rule)

        assert service.get_state(item.identifier) is None
        assert database.get_containment_history(item.identifier)[0].status is ContainmentStatus.EXPIRED

    def test_unknown_rule_ignored(self, service, item):
        service.contain(item)
        service.handle_rule_expired(_fake_rule("/opt/other"))
        assert service.get_state(item.identifier).network_blocked

    def test_blocker_callback_bound(self, service, blocker):
        assert blocker.on_rule_expired == service.handle_rule_expired


class TestEmergencyRollback:

    def test_network_halves_dropped(self, service, item, item_factory, files, tmp_path, blocker, database):
        other_bin = tmp_path / "other"
        other_bin.write_bytes(b"x")
        other = item_factory("com.other", executable_path=str(other_bin))
        service.contain(item)
        service.block_network_only(other)
        blocker.emergency_rollback_all.return_value = 2

        assert service.emergency_rollback() == 2

        assert service.get_state("com.other") is None
        assert database.get_active_containment("com.other") is None
        state = service.get_state(item.identifier)
        assert state.persistence_disabled and not state.network_blocked


class TestSingleton:

    def test_set_and_get(self, service):
        set_containment_service(service)
        assert get_containment_service() is service

    def test_default_timeout_from_configuration(self, item, blocker, monkeypatch):
        prefs = Preferences()
        config = MonitorConfiguration.load(prefs)
        config.default_containment_timeout = 1800.0
        config.save(prefs)
        monkeypatch.setattr(
            "persistwatch.containment.containment_service.default_executor", lambda: MagicMock()
        )
        monkeypatch.setattr(
            "persistwatch.containment.containment_service.NetworkBlocker", lambda **kwargs: blocker
        )

        service = get_containment_service()
        result = service.contain(item)

        assert service.default_timeout == 1800.0
        assert blocker.block_binary.call_args.kwargs["timeout"] == 1800.0
        remaining = (result.action.expires_at - datetime.now()).total_seconds()
        assert 1790 < remaining <= 1800
