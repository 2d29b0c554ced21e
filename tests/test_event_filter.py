"""
Tests for the filesystem event filter (noise + category relevance).
"""

import pytest

from persistwatch.core.models import PersistenceCategory
from persistwatch.guardian.event_filter import (
    is_noise,
    is_relevant,
    is_relevant_for_category,
)


class TestNoise:

    @pytest.mark.parametrize("path", [
        "/Library/LaunchAgents/.DS_Store",
        "/Library/LaunchAgents/.ds_store",
        "/Library/LaunchAgents/._com.example.plist",
        "/Users/me/Library/LaunchAgents/com.example.plist.swp",
        "/Users/me/Library/LaunchAgents/com.example.plist~",
        "/Library/LaunchDaemons/com.example.plist.tmp",
        "/Library/Application Support/Vendor/update.crdownload",
        "/Library/Application Support/Vendor/agent.log",
        "/Library/Application Support/Vendor/agent.pid",
        "/Volumes/Disk/.Spotlight-V100",
        "/Users/me/Library/Application Support/~$report.docx",
    ])
    def test_noise(self, path):
        assert is_noise(path)

    @pytest.mark.parametrize("path", [
        "/Library/LaunchAgents/com.example.plist",
        "/Library/Extensions/Foo.kext",
        "/Users/me/.zshrc",
        "/etc/periodic/daily/500.daily",
    ])
    def test_not_noise(self, path):
        assert not is_noise(path)


class TestCategoryRelevance:

    def test_launchd_only_plists(self):
        for cat in (PersistenceCategory.LAUNCH_AGENTS, PersistenceCategory.LAUNCH_DAEMONS):
            assert is_relevant_for_category("/Library/LaunchAgents/com.x.plist", cat)
            assert is_relevant_for_category("/Library/LaunchAgents/com.x.PLIST", cat)
            assert not is_relevant_for_category("/Library/LaunchAgents/readme.txt", cat)

    def test_kext_bundle_and_contents(self):
        cat = PersistenceCategory.KERNEL_EXTENSIONS
        assert is_relevant_for_category("/Library/Extensions/Foo.kext", cat)
        assert is_relevant_for_category("/Library/Extensions/Foo.kext/Contents/Info.plist", cat)
        assert not is_relevant_for_category("/Library/Extensions/notes.txt", cat)

    def test_shell_startup_files(self):
        cat = PersistenceCategory.SHELL_STARTUP_FILES
        assert is_relevant_for_category("/Users/me/.zshrc", cat)
        assert is_relevant_for_category("/etc/profile", cat)
        assert not is_relevant_for_category("/Users/me/.vimrc", cat)

    def test_spotlight_accepts_quicklook(self):
        cat = PersistenceCategory.SPOTLIGHT_IMPORTERS
        assert is_relevant_for_category("/Library/Spotlight/Foo.mdimporter", cat)
        assert is_relevant_for_category("/Library/QuickLook/Foo.qlgenerator", cat)

    def test_unlisted_category_accepts_everything(self):
        cat = PersistenceCategory.CRON_JOBS
        assert is_relevant_for_category("/var/at/tabs/root", cat)
        assert is_relevant_for_category("/usr/lib/cron/tabs/anything", cat)


class TestIsRelevant:

    def test_noise_beats_category(self):
        # an AppleDouble companion of a plist is still noise
        assert not is_relevant("/Library/LaunchAgents/._com.x.plist", PersistenceCategory.LAUNCH_AGENTS)

    def test_relevant_plist(self):
        assert is_relevant("/Library/LaunchAgents/com.x.plist", PersistenceCategory.LAUNCH_AGENTS)

    def test_wrong_type_for_category(self):
        assert not is_relevant("/Library/LaunchAgents/com.x.json", PersistenceCategory.LAUNCH_AGENTS)
