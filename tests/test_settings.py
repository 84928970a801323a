"""
Tests for configuration loading and the .env writer.
"""

import pytest
from pydantic import ValidationError

from config.env_file import update_env_file
from config.settings import load_settings
from connectors.errors import ConfigurationError


class TestLoadSettings:
    def test_defaults(self, settings):
        assert settings.api_version == "2025-09"
        assert settings.notion_version == "2022-06-28"
        assert settings.default_max_retries == 3
        assert settings.connection_id is None
        assert settings.callback_timeout_seconds is None

    def test_trailing_slash_stripped(self, clean_env):
        s = load_settings(api_key="k", user_id="u", base_url="https://x.test/api/", _env_file=None)
        assert s.base_url == "https://x.test/api"

    def test_reads_environment(self, clean_env):
        clean_env.setenv("ALLOY_API_KEY", "env-key")
        clean_env.setenv("ALLOY_USER_ID", "env-user")
        clean_env.setenv("ALLOY_BASE_URL", "https://env.test")
        clean_env.setenv("CONNECTION_ID", "conn-9")
        s = load_settings(_env_file=None)
        assert s.api_key == "env-key"
        assert s.user_id == "env-user"
        assert s.connection_id == "conn-9"

    def test_missing_api_key_is_configuration_error(self, clean_env):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(user_id="u", base_url="https://x.test", _env_file=None)
        assert exc_info.value.fields

    def test_blank_value_is_configuration_error(self, clean_env):
        with pytest.raises(ConfigurationError):
            load_settings(api_key="   ", user_id="u", base_url="https://x.test", _env_file=None)

    def test_missing_base_url_is_configuration_error(self, clean_env):
        with pytest.raises(ConfigurationError):
            load_settings(api_key="k", user_id="u", _env_file=None)

    def test_blank_connection_id_becomes_none(self, clean_env):
        s = load_settings(api_key="k", user_id="u", base_url="https://x.test", connection_id=" ", _env_file=None)
        assert s.connection_id is None

    def test_settings_are_frozen(self, settings):
        with pytest.raises(ValidationError):
            settings.api_key = "other"

    def test_masked_key_hides_secret(self, settings):
        masked = settings.masked_api_key()
        assert settings.api_key not in masked
        assert masked.startswith("sk-t")


class TestUpdateEnvFile:
    def test_appends_missing_key(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("ALLOY_API_KEY=abc")
        assert update_env_file(env, "CONNECTION_ID", "conn-1") is True
        assert env.read_text() == "ALLOY_API_KEY=abc\nCONNECTION_ID=conn-1\n"

    def test_replaces_existing_key(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("CONNECTION_ID=old\nOTHER=1\n")
        update_env_file(env, "CONNECTION_ID", "new")
        assert env.read_text() == "CONNECTION_ID=new\nOTHER=1\n"

    def test_unchanged_value_returns_false(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("CONNECTION_ID=same\n")
        assert update_env_file(env, "CONNECTION_ID", "same") is False

    def test_seeds_from_template(self, tmp_path):
        template = tmp_path / ".env.example"
        template.write_text("ALLOY_API_KEY=\nCONNECTION_ID=\n")
        env = tmp_path / ".env"
        update_env_file(env, "CONNECTION_ID", "conn-2", template=template)
        assert env.read_text() == "ALLOY_API_KEY=\nCONNECTION_ID=conn-2\n"

    def test_value_with_backslash_is_literal(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("CONNECTION_ID=x\n")
        update_env_file(env, "CONNECTION_ID", r"a\1b")
        assert env.read_text() == "CONNECTION_ID=a\\1b\n"
