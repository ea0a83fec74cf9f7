import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from curious_sync.config_manager import ConfigManager
from curious_sync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "conf" / "config.yaml"
        self.manager = ConfigManager(str(self.config_path))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_missing_file_is_created_with_defaults(self) -> None:
        self.assertTrue(self.config_path.exists())
        config = self.manager.load()
        self.assertEqual(config.google.calendar_id, "primary")
        self.assertEqual(config.microsoft.calendar_id, "calendar")
        self.assertEqual(config.sync.conflict_policy, "manual")
        self.assertFalse(config.google.is_configured())

    def test_save_fallback_when_replace_ebusy(self) -> None:
        config = AppConfig.from_dict(
            {
                "google": {"enabled": True, "client_id": "cid", "access_token": "tok"},
                "sync": {"past_days": 7},
            }
        )

        original_replace = Path.replace

        def replace_side_effect(self: Path, target: Path) -> Path:
            if str(self).endswith(".tmp"):
                raise OSError(errno.EBUSY, "Device or resource busy")
            return original_replace(self, target)

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            self.manager.save(config)

        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["google"]["client_id"], "cid")
        self.assertEqual(data["sync"]["past_days"], 7)
        self.assertFalse(self.config_path.with_suffix(".yaml.tmp").exists())

    def test_update_merges_and_ignores_masked_secrets(self) -> None:
        self.manager.update({"google": {"enabled": True, "client_secret": "s3cret", "access_token": "tok"}})

        updated = self.manager.update(
            {"google": {"client_secret": "***", "calendar_id": "team@example.com"}, "sync": {"conflict_policy": "newest_wins"}}
        )

        self.assertEqual(updated.google.client_secret, "s3cret")
        self.assertEqual(updated.google.calendar_id, "team@example.com")
        self.assertTrue(updated.google.enabled)
        self.assertTrue(updated.google.is_configured())
        self.assertEqual(updated.sync.conflict_policy, "newest_wins")

    def test_masked_hides_secrets(self) -> None:
        self.manager.update({"microsoft": {"client_secret": "s3cret", "refresh_token": "r", "client_id": "cid"}})

        masked = self.manager.masked()

        self.assertEqual(masked["microsoft"]["client_secret"], "***")
        self.assertEqual(masked["microsoft"]["refresh_token"], "***")
        self.assertEqual(masked["microsoft"]["access_token"], "")
        self.assertEqual(masked["microsoft"]["client_id"], "cid")
        self.assertEqual(self.manager.load().microsoft.client_secret, "s3cret")

    def test_store_tokens(self) -> None:
        self.manager.store_tokens(
            "microsoft",
            access_token="a2",
            refresh_token="r2",
            expires_at="2026-03-02T10:00:00+00:00",
        )

        config = self.manager.load()
        self.assertEqual(config.microsoft.access_token, "a2")
        self.assertEqual(config.microsoft.refresh_token, "r2")
        self.assertEqual(config.microsoft.token_expires_at, "2026-03-02T10:00:00+00:00")

    def test_out_of_range_values_are_clamped(self) -> None:
        config = self.manager.update(
            {"sync": {"interval_seconds": 5, "past_days": -3, "conflict_policy": "coin_flip"}, "google": {"sync_direction": "up"}}
        )

        self.assertEqual(config.sync.interval_seconds, 30)
        self.assertEqual(config.sync.past_days, 0)
        self.assertEqual(config.sync.conflict_policy, "manual")
        self.assertEqual(config.google.sync_direction, "bidirectional")


if __name__ == "__main__":
    unittest.main()
