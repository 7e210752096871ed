"""
Configuration Tests
Loading from the environment and dotenv files, defaults and validation
"""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from mailstore.utils.config import Config, ConfigurationError

MISSING_ENV = "/nonexistent/mailstore.env"


class TestConfigLoading(unittest.TestCase):

    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        config = Config(MISSING_ENV)

        self.assertEqual(config.database.connection, "mongodb://localhost:27017")
        self.assertEqual(config.database.database, "mailstore")
        self.assertEqual(config.database.messages, "messages")
        self.assertEqual(config.database.users, "users")
        self.assertEqual(config.storage.attachments_path, "attachments")
        self.assertIsNone(config.storage.temp_path)
        self.assertEqual(config.storage.spool_workers, 4)
        self.assertEqual(config.storage.parse_timeout, 60.0)
        self.assertEqual(config.storage.max_mime_parts, 100)
        self.assertFalse(config.system.debug)
        self.assertEqual(config.system.server_name, "localhost")
        self.assertEqual(config.system.log_format, "text")
        self.assertEqual(config.system.post_parse_steps, [])
        self.assertTrue(config.validate())

    @patch.dict(os.environ, {
        "MONGO_URI": "mongodb://db.internal:27017",
        "MONGO_DATABASE": "mail",
        "ATTACHMENTS_PATH": "/var/mail/attachments",
        "ATTACHMENTS_TEMP_PATH": "/var/mail/spool",
        "SPOOL_WORKERS": "8",
        "PARSE_TIMEOUT": "2.5",
        "DEBUG": "yes",
        "SERVER_NAME": "example.com",
        "LOG_FORMAT": " JSON ",
        "POST_PARSE_STEPS": "hooks.spam:score,\nhooks.tags:apply",
    }, clear=True)
    def test_environment_overrides(self):
        config = Config(MISSING_ENV)

        self.assertEqual(config.database.connection, "mongodb://db.internal:27017")
        self.assertEqual(config.database.database, "mail")
        self.assertEqual(config.storage.temp_path, "/var/mail/spool")
        self.assertEqual(config.storage.spool_workers, 8)
        self.assertEqual(config.storage.parse_timeout, 2.5)
        self.assertTrue(config.system.debug)
        self.assertEqual(config.system.server_name, "example.com")
        self.assertEqual(config.system.log_format, "json")
        self.assertEqual(config.system.post_parse_steps, ["hooks.spam:score", "hooks.tags:apply"])
        self.assertTrue(config.validate())

    @patch.dict(os.environ, {}, clear=True)
    def test_dotenv_file_is_loaded(self):
        with tempfile.TemporaryDirectory() as tmp:
            env_file = Path(tmp) / ".env"
            env_file.write_text("SERVER_NAME=mail.example.org\nMESSAGES_COLLECTION=mail\n")
            config = Config(str(env_file))

        self.assertEqual(config.system.server_name, "mail.example.org")
        self.assertEqual(config.database.messages, "mail")

    @patch.dict(os.environ, {"SERVER_NAME": "from-env.example"}, clear=True)
    def test_environment_wins_over_dotenv(self):
        with tempfile.TemporaryDirectory() as tmp:
            env_file = Path(tmp) / ".env"
            env_file.write_text("SERVER_NAME=from-file.example\n")
            config = Config(str(env_file))

        self.assertEqual(config.system.server_name, "from-env.example")

    @patch.dict(os.environ, {"SPOOL_WORKERS": "many"}, clear=True)
    def test_non_numeric_value_fails_loudly(self):
        with self.assertRaises(ValueError):
            Config(MISSING_ENV)


class TestConfigValidation(unittest.TestCase):

    def _config(self, **env):
        with patch.dict(os.environ, env, clear=True):
            return Config(MISSING_ENV)

    def test_empty_server_name(self):
        config = self._config(SERVER_NAME="")
        with self.assertRaises(ConfigurationError):
            config.validate()

    def test_non_positive_limits(self):
        for key in ("SPOOL_WORKERS", "MAX_MIME_PARTS"):
            with self.subTest(key=key):
                config = self._config(**{key: "0"})
                with self.assertRaises(ConfigurationError):
                    config.validate()

    def test_negative_timeout(self):
        with self.assertRaises(ConfigurationError):
            self._config(PARSE_TIMEOUT="-1").validate()

    def test_zero_timeout_disables(self):
        self.assertTrue(self._config(PARSE_TIMEOUT="0").validate())

    def test_unknown_log_format(self):
        with self.assertRaises(ConfigurationError):
            self._config(LOG_FORMAT="xml").validate()

    def test_malformed_post_parse_step(self):
        with self.assertRaises(ConfigurationError):
            self._config(POST_PARSE_STEPS="hooks.spam.score").validate()

    def test_configuration_error_is_value_error(self):
        self.assertTrue(issubclass(ConfigurationError, ValueError))


if __name__ == '__main__':
    unittest.main()
