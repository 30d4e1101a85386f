"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from collab_imagegen.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        state_dir = Path.home() / ".local" / "share" / "collab-imagegen"
        assert settings.state_dir == state_dir
        assert settings.builds_dir == state_dir / "builds"
        assert "sqlite" in settings.db_url
        assert settings.docker_bin == "docker"
        assert settings.image_repository is None
        assert settings.pipeline_file is None
        assert settings.log_level == "INFO"
        assert settings.verify_images is True
        assert settings.allow_empty_assets is False

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "COLLAB_IMG_LOG_LEVEL": "DEBUG",
                "COLLAB_IMG_DOCKER_BIN": "/usr/local/bin/docker",
                "COLLAB_IMG_VERIFY_IMAGES": "false",
                "COLLAB_IMG_BUILD_TIMEOUT": "900",
            },
        ):
            settings = Settings()
            assert settings.log_level == "DEBUG"
            assert settings.docker_bin == "/usr/local/bin/docker"
            assert settings.verify_images is False
            assert settings.build_timeout == 900

    def test_lock_dir_under_state_dir(self) -> None:
        """Lock files should live under the state directory."""
        with patch.dict(os.environ, {"COLLAB_IMG_STATE_DIR": "/tmp/collab-state"}):
            settings = Settings()
            assert settings.lock_dir == Path("/tmp/collab-state/locks")

    def test_build_timeout_lower_bound(self) -> None:
        """Build timeouts below one minute should be rejected."""
        with pytest.raises(ValidationError):
            Settings(build_timeout=5)

    def test_image_repository_override(self) -> None:
        """A registry-qualified repository override should be accepted."""
        settings = Settings(image_repository="ghcr.io/zed/collab")
        assert settings.image_repository == "ghcr.io/zed/collab"

    def test_invalid_image_repository_rejected(self) -> None:
        """A repository override outside the reference grammar is rejected."""
        with patch.dict(os.environ, {"COLLAB_IMG_IMAGE_REPOSITORY": "Bad Repo"}):
            with pytest.raises(ValidationError):
                Settings()


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        parsed = json.loads(print_settings_json(settings))

        assert "state_dir" in parsed
        assert "builds_dir" in parsed
        assert "db_url" in parsed
        assert "lock_timeout" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "docker_bin" in parsed
