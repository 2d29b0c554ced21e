"""
Tests for MonitorConfiguration presets, serialization, env overrides
and the Preferences store behind them.
"""

import pytest

from persistwatch.core.config import MonitorConfiguration, MonitorPreset
from persistwatch.core.models import CORE_CATEGORIES, PersistenceCategory
from persistwatch.core.preferences import Preferences


@pytest.fixture
def prefs(tmp_path):
    return Preferences(db_path=str(tmp_path / "prefs.db"))


class TestPreferences:

    def test_missing_key_returns_default(self, prefs):
        assert prefs.get("nope") is None
        assert prefs.get("nope", 7) == 7

    def test_values_keep_their_types(self, prefs):
        prefs.set("flag", True)
        prefs.set("interval", 2.5)
        prefs.set("list", ["a", "b"])
        assert prefs.get("flag") is True
        assert prefs.get("interval") == 2.5
        assert prefs.get("list") == ["a", "b"]

    def test_upsert_and_delete(self, prefs):
        prefs.set("k", 1)
        prefs.set("k", 2)
        assert prefs.get_all() == {"k": 2}
        assert prefs.delete("k") is True
        assert prefs.delete("k") is False

    def test_default_path_uses_data_dir(self, tmp_path):
        p = Preferences()
        assert p.db_path == tmp_path / "data" / "preferences.db"


class TestMonitorConfiguration:

    def test_defaults(self):
        config = MonitorConfiguration()
        assert config.cooldown_interval == 5.0
        assert config.scan_debounce_interval == 2.0
        assert config.minimum_relevance_score == 30
        assert config.enabled_categories == set(PersistenceCategory.monitorable())
        assert config.monitorable_categories() == config.enabled_categories

    def test_monitorable_drops_unwatchable(self):
        config = MonitorConfiguration(enabled_categories={
            PersistenceCategory.LAUNCH_AGENTS,
            PersistenceCategory.MDM_PROFILES,
            PersistenceCategory.TCC_ACCESSIBILITY,
        })
        assert config.monitorable_categories() == {PersistenceCategory.LAUNCH_AGENTS}

    def test_minimal_preset(self):
        config = MonitorConfiguration()
        config.apply_preset(MonitorPreset.MINIMAL)
        assert config.minimum_relevance_score == 60
        assert config.cooldown_interval == 10.0
        assert config.notify_on_remove is False
        assert PersistenceCategory.LAUNCH_DAEMONS in config.enabled_categories

    def test_balanced_preset_uses_core_categories(self):
        config = MonitorConfiguration()
        config.apply_preset("balanced")
        assert config.enabled_categories == {c for c in CORE_CATEGORIES if c.monitored_paths}
        assert config.minimum_relevance_score == 30

    def test_paranoid_preset(self):
        config = MonitorConfiguration()
        config.apply_preset(MonitorPreset.PARANOID)
        assert config.minimum_relevance_score == 10
        assert config.cooldown_interval == 2.0
        assert config.enabled_categories == set(PersistenceCategory.monitorable())

    def test_unknown_preset_rejected(self):
        with pytest.raises(ValueError):
            MonitorConfiguration().apply_preset("loud")

    @pytest.mark.parametrize("change_type,attr", [
        ("added", "notify_on_add"),
        ("removed", "notify_on_remove"),
        ("modified", "notify_on_modify"),
        ("disabled", "notify_on_modify"),
    ])
    def test_should_notify_toggles(self, change_type, attr):
        config = MonitorConfiguration()
        assert config.should_notify(change_type)
        setattr(config, attr, False)
        assert not config.should_notify(change_type)

    def test_save_and_load_round_trip(self, prefs):
        config = MonitorConfiguration()
        config.apply_preset(MonitorPreset.MINIMAL)
        config.auto_start = True
        config.save(prefs)

        loaded = MonitorConfiguration.load(prefs)
        assert loaded == config

    def test_env_overrides(self):
        config = MonitorConfiguration.from_env({
            "PERSISTWATCH_COOLDOWN_INTERVAL": "12",
            "PERSISTWATCH_AUTO_START": "yes",
            "PERSISTWATCH_MINIMUM_RELEVANCE_SCORE": "55",
            "PERSISTWATCH_ENABLED_CATEGORIES": "launch_agents, cron_jobs, bogus",
        })
        assert config.cooldown_interval == 12.0
        assert config.auto_start is True
        assert config.minimum_relevance_score == 55
        assert config.enabled_categories == {
            PersistenceCategory.LAUNCH_AGENTS,
            PersistenceCategory.CRON_JOBS,
        }

    def test_invalid_env_value_ignored(self):
        config = MonitorConfiguration.from_env({"PERSISTWATCH_COOLDOWN_INTERVAL": "soon"})
        assert config.cooldown_interval == 5.0

    def test_to_dict_sorts_categories(self):
        d = MonitorConfiguration(enabled_categories={
            PersistenceCategory.LAUNCH_DAEMONS, PersistenceCategory.CRON_JOBS,
        }).to_dict()
        assert d["enabled_categories"] == ["cron_jobs", "launch_daemons"]

    def test_reset_to_defaults(self):
        config = MonitorConfiguration(cooldown_interval=30.0, auto_start=True)
        config.reset_to_defaults()
        assert config == MonitorConfiguration()
