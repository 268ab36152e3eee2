"""Tests for configuration settings."""

import dataclasses
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from waydroid_backup.config.settings import (
    DEFAULT_CONFIG_FILE,
    BackupConfig,
    ConfigurationError,
    PathsConfig,
    ServicesConfig,
    Settings,
    _apply_environment_overrides,
    _replace_nested,
    _validate_config,
    get_config_path,
    load_config,
    settings_to_dict,
)

ENV_VARS = (
    "WAYDROID_BACKUP_CONFIG",
    "BACKUP_DIR",
    "MAX_BACKUPS",
    "WAYDROID_BACKUP_DIR",
    "WAYDROID_BACKUP_MAX_BACKUPS",
    "WAYDROID_BACKUP_EXPORT_DIR",
    "WAYDROID_BACKUP_LOG_LEVEL",
)


class ConfigTestCase(unittest.TestCase):
    """Isolates tests from the caller's environment."""

    def setUp(self) -> None:
        """Set up a temp directory and a clean environment."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.config_path = Path(self.temp_dir.name) / "config.yaml"

        env_patcher = patch.dict(os.environ)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)
        for name in ENV_VARS:
            os.environ.pop(name, None)

    def _write_config(self, data) -> Path:
        with open(self.config_path, "w") as f:
            yaml.safe_dump(data, f)
        return self.config_path


class TestDefaults(ConfigTestCase):
    """Tests for default settings."""

    def test_default_values(self) -> None:
        """Test defaults match the standard Waydroid layout."""
        settings = Settings()

        self.assertEqual(settings.backup.backup_dir, Path("/var/backups/waydroid"))
        self.assertEqual(settings.backup.max_backups, 5)
        self.assertTrue(settings.backup.auto_clean)
        self.assertEqual(settings.backup.export_dir, Path("/tmp"))
        self.assertEqual(settings.paths.waydroid_data, Path("/var/lib/waydroid"))
        self.assertEqual(settings.paths.waydroid_config, Path("/root/.config/waydroid"))
        self.assertEqual(settings.paths.wayvnc_dir, Path("/etc/wayvnc"))
        self.assertEqual(settings.paths.vnc_password_file, Path("/root/vnc-password.txt"))
        self.assertEqual(settings.services.settle_seconds, 3.0)
        self.assertEqual(settings.log_level, "INFO")

    def test_settings_are_frozen(self) -> None:
        """Test settings cannot be mutated after creation."""
        settings = Settings()

        with self.assertRaises(dataclasses.FrozenInstanceError):
            settings.log_level = "DEBUG"  # type: ignore[misc]

    def test_config_path_default(self) -> None:
        """Test the default config path."""
        self.assertEqual(get_config_path(), DEFAULT_CONFIG_FILE)

    def test_config_path_env(self) -> None:
        """Test WAYDROID_BACKUP_CONFIG overrides the path."""
        os.environ["WAYDROID_BACKUP_CONFIG"] = "/opt/wb.yaml"

        self.assertEqual(get_config_path(), Path("/opt/wb.yaml"))


class TestLoadConfig(ConfigTestCase):
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self) -> None:
        """Test a missing config file is not an error."""
        settings = load_config(Path(self.temp_dir.name) / "absent.yaml")

        self.assertEqual(settings, Settings())

    def test_load_all_sections(self) -> None:
        """Test every section is read."""
        path = self._write_config(
            {
                "backup": {
                    "backup_dir": "/srv/backups",
                    "max_backups": 10,
                    "auto_clean": False,
                    "export_dir": "/mnt/usb",
                },
                "paths": {
                    "waydroid_data": "/data/waydroid",
                    "wayvnc_dir": "/opt/wayvnc",
                },
                "services": {"settle_seconds": 1.5, "command_timeout": 120},
                "logging": {"level": "debug"},
            }
        )

        settings = load_config(path)

        self.assertEqual(settings.backup.backup_dir, Path("/srv/backups"))
        self.assertEqual(settings.backup.max_backups, 10)
        self.assertFalse(settings.backup.auto_clean)
        self.assertEqual(settings.backup.export_dir, Path("/mnt/usb"))
        self.assertEqual(settings.paths.waydroid_data, Path("/data/waydroid"))
        self.assertEqual(settings.paths.wayvnc_dir, Path("/opt/wayvnc"))
        self.assertEqual(settings.paths.waydroid_config, Path("/root/.config/waydroid"))
        self.assertEqual(settings.services.settle_seconds, 1.5)
        self.assertEqual(settings.services.command_timeout, 120)
        self.assertEqual(settings.log_level, "DEBUG")

    def test_empty_file(self) -> None:
        """Test an empty file gives defaults."""
        self.config_path.write_text("")

        self.assertEqual(load_config(self.config_path), Settings())

    def test_invalid_yaml(self) -> None:
        """Test malformed YAML raises ConfigurationError."""
        self.config_path.write_text("backup: [unclosed\n")

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_non_mapping_rejected(self) -> None:
        """Test a top-level list raises ConfigurationError."""
        self._write_config(["not", "a", "mapping"])

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_bad_section_type(self) -> None:
        """Test a section that is not a mapping raises ConfigurationError."""
        self._write_config({"backup": "oops"})

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_bad_value_type(self) -> None:
        """Test a non-numeric max_backups raises ConfigurationError."""
        self._write_config({"backup": {"max_backups": "lots"}})

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_invalid_max_backups(self) -> None:
        """Test max_backups below 1 is rejected."""
        self._write_config({"backup": {"max_backups": 0}})

        with self.assertRaises(ConfigurationError) as cm:
            load_config(self.config_path)

        self.assertIn("max_backups", str(cm.exception))


class TestEnvironmentOverrides(ConfigTestCase):
    """Tests for environment variable overrides."""

    def test_legacy_variables(self) -> None:
        """Test BACKUP_DIR and MAX_BACKUPS are honoured."""
        os.environ["BACKUP_DIR"] = "/backups"
        os.environ["MAX_BACKUPS"] = "3"

        settings = _apply_environment_overrides(Settings())

        self.assertEqual(settings.backup.backup_dir, Path("/backups"))
        self.assertEqual(settings.backup.max_backups, 3)

    def test_prefixed_variables_win(self) -> None:
        """Test WAYDROID_BACKUP_* overrides the bare names."""
        os.environ["BACKUP_DIR"] = "/backups"
        os.environ["WAYDROID_BACKUP_DIR"] = "/preferred"

        settings = _apply_environment_overrides(Settings())

        self.assertEqual(settings.backup.backup_dir, Path("/preferred"))

    def test_env_overrides_file(self) -> None:
        """Test environment variables override file values."""
        path = self._write_config({"backup": {"max_backups": 10}})
        os.environ["WAYDROID_BACKUP_MAX_BACKUPS"] = "2"
        os.environ["WAYDROID_BACKUP_LOG_LEVEL"] = "warning"

        settings = load_config(path)

        self.assertEqual(settings.backup.max_backups, 2)
        self.assertEqual(settings.log_level, "WARNING")

    def test_invalid_env_value(self) -> None:
        """Test a non-numeric MAX_BACKUPS raises ConfigurationError."""
        os.environ["MAX_BACKUPS"] = "five"

        with self.assertRaises(ConfigurationError):
            _apply_environment_overrides(Settings())


class TestValidation(unittest.TestCase):
    """Tests for _validate_config."""

    def test_valid_defaults(self) -> None:
        """Test defaults pass validation."""
        _validate_config(Settings())

    def test_invalid_log_level(self) -> None:
        """Test an unknown log level is rejected."""
        with self.assertRaises(ConfigurationError):
            _validate_config(Settings(log_level="LOUD"))

    def test_negative_settle(self) -> None:
        """Test a negative settle time is rejected."""
        with self.assertRaises(ConfigurationError):
            _validate_config(Settings(services=ServicesConfig(settle_seconds=-1)))

    def test_zero_timeout(self) -> None:
        """Test a zero command timeout is rejected."""
        with self.assertRaises(ConfigurationError):
            _validate_config(Settings(services=ServicesConfig(command_timeout=0)))


class TestHelpers(unittest.TestCase):
    """Tests for settings helpers."""

    def test_replace_nested(self) -> None:
        """Test dotted replacement returns a new object."""
        settings = Settings()

        updated = _replace_nested(settings, "backup.max_backups", 9)

        self.assertEqual(updated.backup.max_backups, 9)
        self.assertEqual(settings.backup.max_backups, 5)

    def test_settings_to_dict_round_trip(self) -> None:
        """Test a dumped config loads back to the same settings."""
        settings = Settings(
            backup=BackupConfig(backup_dir=Path("/srv/b"), max_backups=7),
            paths=PathsConfig(wayvnc_dir=Path("/opt/wayvnc")),
        )

        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "config.yaml"
            with open(path, "w") as f:
                yaml.safe_dump(settings_to_dict(settings), f)
            with patch.dict(os.environ):
                for name in ENV_VARS:
                    os.environ.pop(name, None)
                loaded = load_config(path)

        self.assertEqual(loaded, settings)


if __name__ == "__main__":
    unittest.main()
