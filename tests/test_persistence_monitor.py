"""
Tests for the PersistenceMonitor state machine, rescan scheduling and
change handling, plus the default NotificationDispatcher.

Scanner, watcher manager and notifier are MagicMocks; the database is a
real MonitorDatabase under tmp_path.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from persistwatch.core.config import MonitorConfiguration
from persistwatch.core.models import PersistenceCategory, SignatureInfo, TrustLevel
from persistwatch.guardian.directory_watcher import DirectoryChangeEvent, FSChangeEventType
from persistwatch.guardian.monitor_database import MonitorDatabase
from persistwatch.guardian.notifications import NotificationDispatcher
from persistwatch.guardian.persistence_monitor import MonitorState, PersistenceMonitor
from persistwatch.intel.change_detector import Change, ChangeType

CAT = PersistenceCategory.LAUNCH_AGENTS


def _vendor_signature():
    return SignatureInfo(is_signed=True, is_valid=True, has_hardened_runtime=True,
                         team_identifier="ABCDE12345")


@pytest.fixture
def baseline_items(item_factory):
    return [item_factory("com.example.good", trust_level=TrustLevel.KNOWN_VENDOR,
                         signature_info=_vendor_signature())]


@pytest.fixture
def scanner(baseline_items):
    s = MagicMock()
    s.scan_all.return_value = list(baseline_items)
    s.scan.return_value = list(baseline_items)
    return s


@pytest.fixture
def watcher_manager():
    m = MagicMock()
    m.start_all.side_effect = lambda categories: list(categories)
    return m


@pytest.fixture
def notifier():
    n = MagicMock()
    n.request_permission.return_value = True
    return n


@pytest.fixture
def config():
    return MonitorConfiguration(scan_debounce_interval=0.05, enabled_categories={CAT})


@pytest.fixture
def database(tmp_path):
    return MonitorDatabase(db_path=str(tmp_path / "monitor.db"))


@pytest.fixture
def monitor(scanner, config, database, notifier, watcher_manager):
    m = PersistenceMonitor(
        scanner=scanner,
        config=config,
        database=database,
        notifier=notifier,
        watcher_manager=watcher_manager,
    )
    yield m
    m.shutdown()


@pytest.fixture
def running(monitor):
    assert monitor.start_monitoring()
    return monitor


def _event(category=CAT):
    return DirectoryChangeEvent(path="/Library/LaunchAgents/x.plist",
                                event_type=FSChangeEventType.MODIFIED, category=category)


class TestLifecycle:

    def test_initial_state(self, monitor):
        assert monitor.state is MonitorState.STOPPED
        assert monitor.status_description == "Stopped"
        assert not monitor.is_running

    def test_start_creates_baseline_and_watchers(self, running, scanner, watcher_manager):
        assert running.state is MonitorState.RUNNING
        assert running.monitored_categories == [CAT]
        assert running.status_description == "Monitoring 1 categories"
        scanner.scan_all.assert_called_once()
        watcher_manager.start_all.assert_called_once_with([CAT])
        assert watcher_manager.on_change_detected == running.process_event
        assert running.baseline.exists
        assert running.config.monitoring_enabled is True

    def test_existing_baseline_skips_full_scan(self, scanner, config, database, notifier,
                                               watcher_manager, baseline_items):
        first = PersistenceMonitor(scanner=scanner, config=config, database=database,
                                   notifier=notifier, watcher_manager=watcher_manager)
        first.start_monitoring()
        first.stop_monitoring()
        scanner.scan_all.reset_mock()

        second = PersistenceMonitor(scanner=scanner, config=config, database=database,
                                    notifier=notifier, watcher_manager=watcher_manager)
        second.start_monitoring()
        scanner.scan_all.assert_not_called()
        second.shutdown()

    def test_items_provider_seeds_baseline(self, scanner, config, notifier, watcher_manager, item_factory):
        m = PersistenceMonitor(scanner=scanner, config=config, notifier=notifier,
                               watcher_manager=watcher_manager,
                               items_provider=lambda: [item_factory("com.seed")])
        m.start_monitoring()
        scanner.scan_all.assert_not_called()
        assert m.baseline.find("com.seed") is not None
        m.shutdown()

    def test_start_twice_rejected(self, running):
        assert running.start_monitoring() is False
        assert running.state is MonitorState.RUNNING

    def test_start_failure_moves_to_error(self, monitor, scanner, watcher_manager):
        scanner.scan_all.side_effect = RuntimeError("disk gone")
        assert monitor.start_monitoring() is False
        assert monitor.state is MonitorState.ERROR
        assert monitor.error_message == "disk gone"
        assert monitor.status_description == "Error: disk gone"
        watcher_manager.stop_all.assert_called()

        scanner.scan_all.side_effect = None
        assert monitor.start_monitoring() is True

    def test_stop(self, running, watcher_manager):
        assert running.stop_monitoring() is True
        assert running.state is MonitorState.STOPPED
        assert running.monitored_categories == []
        assert watcher_manager.on_change_detected is None
        watcher_manager.stop_all.assert_called()
        assert running.stop_monitoring() is False

    def test_state_listener(self, scanner, config, notifier, watcher_manager):
        seen = []
        m = PersistenceMonitor(scanner=scanner, config=config, notifier=notifier,
                               watcher_manager=watcher_manager,
                               state_listener=lambda state, error: seen.append(state))
        m.start_monitoring()
        m.stop_monitoring()
        assert seen == [MonitorState.STARTING, MonitorState.RUNNING,
                        MonitorState.STOPPING, MonitorState.STOPPED]

    def test_auto_start(self, monitor, config):
        assert monitor.initialize_if_auto_start(grace_delay=0.01) is False

        config.auto_start = True
        config.monitoring_enabled = True
        assert monitor.initialize_if_auto_start(grace_delay=0.01) is True
        time.sleep(0.3)
        assert monitor.is_running

    def test_shutdown_cancels_auto_start(self, monitor, config):
        config.auto_start = True
        config.monitoring_enabled = True
        monitor.initialize_if_auto_start(grace_delay=0.3)
        monitor.shutdown()
        time.sleep(0.5)
        assert monitor.state is MonitorState.STOPPED


class TestTargetedScan:

    def test_added_item_recorded_and_notified(self, running, scanner, notifier, baseline_items, item_factory):
        evil = item_factory("com.evil.update", executable_path="/tmp/update",
                            trust_level=TrustLevel.UNSIGNED)
        scanner.scan.return_value = baseline_items + [evil]

        changes = running.perform_targeted_scan(CAT)

        assert [(c.type, c.item_identifier) for c in changes] == [(ChangeType.ADDED, "com.evil.update")]
        notifier.send.assert_called_once()
        notifier.send_batch_summary.assert_not_called()
        assert running.change_count == 1
        assert running.unacknowledged_count == 1
        assert running.last_change.item_identifier == "com.evil.update"
        assert running.scan_count == 1

        history = running.get_change_history()
        assert len(history) == 1
        assert history[0].item_identifier == "com.evil.update"
        assert running.baseline.find("com.evil.update") is not None

    def test_no_change_second_time(self, running, scanner, baseline_items, item_factory):
        scanner.scan.return_value = baseline_items + [item_factory("com.new")]
        assert len(running.perform_targeted_scan(CAT)) == 1
        assert running.perform_targeted_scan(CAT) == []

    def test_below_threshold_recorded_not_notified(self, running, scanner, notifier, config,
                                                   baseline_items, item_factory):
        config.minimum_relevance_score = 100
        quiet = item_factory("com.vendor.quiet", trust_level=TrustLevel.KNOWN_VENDOR,
                             signature_info=_vendor_signature())
        scanner.scan.return_value = baseline_items + [quiet]

        changes = running.perform_targeted_scan(CAT)
        assert len(changes) == 1
        notifier.send.assert_not_called()
        assert running.change_count == 0
        assert len(running.get_change_history()) == 1

    def test_batch_summary_for_multiple_notified(self, running, scanner, notifier, item_factory):
        scanner.scan.return_value = [
            item_factory("com.a", trust_level=TrustLevel.UNSIGNED),
            item_factory("com.b", trust_level=TrustLevel.UNSIGNED),
        ]
        changes = running.perform_targeted_scan(CAT)
        # two added, one removed
        assert len(changes) == 3
        notifier.send_batch_summary.assert_called_once()
        assert len(notifier.send_batch_summary.call_args[0][0]) >= 2

    def test_scan_failure_keeps_baseline(self, running, scanner):
        scanner.scan.side_effect = RuntimeError("permission denied")
        assert running.perform_targeted_scan(CAT) == []
        assert running.scan_count == 0
        assert running.baseline.find("com.example.good") is not None

    def test_category_without_baseline_skipped(self, running, scanner):
        assert running.perform_targeted_scan(PersistenceCategory.CRON_JOBS) == []
        scanner.scan.assert_not_called()

    def test_results_discarded_when_stopped(self, running, scanner, item_factory, notifier):
        running.stop_monitoring()
        scanner.scan.return_value = [item_factory("com.late")]
        assert running.perform_targeted_scan(CAT) == []
        notifier.send.assert_not_called()

    def test_notifier_failure_does_not_abort(self, running, scanner, notifier, baseline_items, item_factory):
        notifier.send.side_effect = RuntimeError("no display")
        scanner.scan.return_value = baseline_items + [item_factory("com.x", trust_level=TrustLevel.UNSIGNED)]
        assert len(running.perform_targeted_scan(CAT)) == 1
        assert running.baseline.find("com.x") is not None

    def test_items_listener(self, scanner, config, notifier, watcher_manager, baseline_items):
        seen = []
        m = PersistenceMonitor(scanner=scanner, config=config, notifier=notifier,
                               watcher_manager=watcher_manager,
                               items_listener=lambda cat, items: seen.append((cat, len(items))))
        m.start_monitoring()
        m.perform_targeted_scan(CAT)
        assert seen == [(CAT, len(baseline_items))]
        m.shutdown()


class TestRescanScheduling:

    def test_event_ignored_when_stopped(self, monitor, scanner):
        monitor.process_event(_event())
        assert monitor.last_event_at is not None
        assert monitor.pending_scan_count == 0

    def test_burst_coalesces_to_one_scan(self, running, scanner):
        for _ in range(10):
            running.process_event(_event())
        assert running.pending_scan_count == 1

        time.sleep(0.4)
        assert scanner.scan.call_count == 1
        assert running.pending_scan_count == 0

    def test_categories_scheduled_independently(self, running, scanner):
        running.schedule_rescan(CAT)
        running.schedule_rescan(PersistenceCategory.LAUNCH_DAEMONS)
        assert running.pending_scan_count == 2

    def test_in_flight_rescan_reruns_once(self, running, scanner, baseline_items):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_scan(category):
            calls.append(category)
            started.set()
            release.wait(2)
            return list(baseline_items)

        scanner.scan.side_effect = slow_scan
        running.schedule_rescan(CAT)
        assert started.wait(1)

        for _ in range(3):
            running.schedule_rescan(CAT)
            time.sleep(0.1)
        assert len(calls) == 1

        release.set()
        time.sleep(0.4)
        assert len(calls) == 2

    def test_stop_cancels_pending(self, running, scanner, config):
        config.scan_debounce_interval = 0.3
        running.schedule_rescan(CAT)
        running.stop_monitoring()
        assert running.pending_scan_count == 0
        time.sleep(0.5)
        scanner.scan.assert_not_called()


class TestBaselineOperations:

    def test_update_baseline(self, running, scanner, item_factory):
        scanner.scan_all.return_value = [item_factory("a"), item_factory("b")]
        assert running.update_baseline() == 2
        assert running.get_baseline_stats()["total_items"] == 2

    def test_reset_baseline(self, running, scanner, item_factory):
        scanner.scan.return_value = [item_factory("com.x", trust_level=TrustLevel.UNSIGNED)]
        running.perform_targeted_scan(CAT)
        running.reset_baseline()

        assert not running.baseline.exists
        assert running.change_count == 0
        assert running.unacknowledged_count == 0
        assert running.last_change is None
        assert running.get_change_history() == []

    def test_acknowledge(self, running, scanner, item_factory):
        scanner.scan.return_value = [item_factory("com.x", trust_level=TrustLevel.UNSIGNED)]
        running.perform_targeted_scan(CAT)
        entry = running.get_change_history()[0]

        assert running.acknowledge_change(entry.id) is True
        assert running.acknowledge_change(entry.id) is False
        assert running.acknowledge_all_changes() >= 1
        assert running.unacknowledged_count == 0

    def test_unacknowledged_count_loaded(self, running, scanner, item_factory, config, database,
                                         notifier, watcher_manager):
        scanner.scan.return_value = [item_factory("com.x", trust_level=TrustLevel.UNSIGNED)]
        running.perform_targeted_scan(CAT)
        again = PersistenceMonitor(scanner=scanner, config=config, database=database,
                                   notifier=notifier, watcher_manager=watcher_manager)
        assert again.unacknowledged_count == database.get_unacknowledged_count()


class TestNotificationDispatcher:

    def _change(self, item_factory, change_type=ChangeType.ADDED, **kwargs):
        return Change(type=change_type, category=CAT, item=item_factory("com.x", **kwargs))

    def test_send_delivers_to_subscribers(self, item_factory):
        dispatcher = NotificationDispatcher(MonitorConfiguration())
        received = []
        dispatcher.subscribe(received.append)

        dispatcher.send(self._change(item_factory, trust_level=TrustLevel.UNSIGNED), 85)
        assert len(received) == 1
        n = received[0]
        assert n.title == "New Persistence Item Detected"
        assert n.body.endswith("- UNSIGNED")
        assert n.high_relevance is True
        assert n.play_sound is True
        assert dispatcher.recent == [n]

    def test_toggle_suppresses(self, item_factory):
        config = MonitorConfiguration(notify_on_remove=False)
        dispatcher = NotificationDispatcher(config)
        dispatcher.send(self._change(item_factory, ChangeType.REMOVED), 90)
        assert dispatcher.recent == []

    def test_low_relevance_no_sound(self, item_factory):
        dispatcher = NotificationDispatcher(MonitorConfiguration())
        dispatcher.send(self._change(item_factory), 40)
        assert dispatcher.recent[0].play_sound is False

    def test_batch_summary(self, item_factory):
        dispatcher = NotificationDispatcher()
        changes = [self._change(item_factory), self._change(item_factory, ChangeType.REMOVED)]
        dispatcher.send_batch_summary(changes)
        assert dispatcher.recent[0].title == "2 Persistence Changes Detected"
        assert dispatcher.recent[0].body == "+1 added, -1 removed"
        assert dispatcher.recent[0].badge_count == 2

    def test_batch_summary_without_badge(self, item_factory):
        dispatcher = NotificationDispatcher(MonitorConfiguration(show_badge=False))
        dispatcher.send_batch_summary([self._change(item_factory)])
        assert dispatcher.recent[0].badge_count is None

    def test_subscriber_failure_contained(self, item_factory):
        dispatcher = NotificationDispatcher()
        dispatcher.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        ok = []
        dispatcher.subscribe(ok.append)
        dispatcher.send(self._change(item_factory), 50)
        assert len(ok) == 1

    def test_history_bounded(self, item_factory):
        dispatcher = NotificationDispatcher(history_size=3)
        for _ in range(5):
            dispatcher.send(self._change(item_factory), 50)
        assert len(dispatcher.recent) == 3
