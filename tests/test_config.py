"""Unit tests for SchedulerConfig and Settings.

Tests configuration validation and get_workspace_root() path resolution.
No mocks - uses real environment variables via monkeypatch.
"""

import tempfile
from pathlib import Path

import pytest
from pydantic import ValidationError

from code_grader.config import SchedulerConfig
from code_grader.models import OutputNormalization
from code_grader.settings import Settings

# ============================================================================
# Config Validation
# ============================================================================


class TestSchedulerConfigValidation:
    """Tests for SchedulerConfig field validation."""

    def test_defaults(self) -> None:
        """SchedulerConfig has sensible defaults."""
        config = SchedulerConfig()
        assert config.max_concurrent_processes == 5
        assert config.max_concurrent_tests_per_request == 4
        assert config.max_queue_depth == 100
        assert config.queue_timeout_seconds == 300
        assert config.compile_timeout_seconds == 30
        assert config.default_time_limit_seconds == 5
        assert config.default_memory_limit_mb == 64
        assert config.max_time_limit_seconds == 30
        assert config.max_memory_limit_mb == 1024
        assert config.output_normalization == OutputNormalization.TRAILING_WHITESPACE
        assert config.max_error_length == 4096
        assert config.workspace_root is None
        assert config.isolate_network is True
        assert config.isolate_filesystem is True
        assert config.health_check_language == "python"

    def test_max_concurrent_processes_range(self) -> None:
        """max_concurrent_processes must be 1-256."""
        assert SchedulerConfig(max_concurrent_processes=1).max_concurrent_processes == 1
        assert SchedulerConfig(max_concurrent_processes=256).max_concurrent_processes == 256

        with pytest.raises(ValidationError):
            SchedulerConfig(max_concurrent_processes=0)
        with pytest.raises(ValidationError):
            SchedulerConfig(max_concurrent_processes=257)

    def test_max_queue_depth_allows_zero(self) -> None:
        """max_queue_depth=0 means no queueing at all."""
        assert SchedulerConfig(max_queue_depth=0).max_queue_depth == 0

        with pytest.raises(ValidationError):
            SchedulerConfig(max_queue_depth=-1)

    def test_compile_timeout_range(self) -> None:
        """compile_timeout_seconds must be in (0, 600]."""
        assert SchedulerConfig(compile_timeout_seconds=600).compile_timeout_seconds == 600

        with pytest.raises(ValidationError):
            SchedulerConfig(compile_timeout_seconds=0)
        with pytest.raises(ValidationError):
            SchedulerConfig(compile_timeout_seconds=601)

    def test_defaults_must_fit_within_maximums(self) -> None:
        """Default limits above the configured maximums are rejected."""
        with pytest.raises(ValidationError, match="default_time_limit_seconds"):
            SchedulerConfig(default_time_limit_seconds=10, max_time_limit_seconds=5)
        with pytest.raises(ValidationError, match="default_memory_limit_mb"):
            SchedulerConfig(default_memory_limit_mb=512, max_memory_limit_mb=256)

    def test_output_normalization_from_string(self) -> None:
        """output_normalization accepts the enum's string values."""
        config = SchedulerConfig(output_normalization="trim")
        assert config.output_normalization == OutputNormalization.TRIM

        with pytest.raises(ValidationError):
            SchedulerConfig(output_normalization="fuzzy")

    def test_max_error_length_floor(self) -> None:
        """max_error_length must be at least 64 characters."""
        with pytest.raises(ValidationError):
            SchedulerConfig(max_error_length=10)

    def test_extra_fields_forbidden(self) -> None:
        """Unknown fields are rejected."""
        with pytest.raises(ValidationError):
            SchedulerConfig(max_vms=3)  # type: ignore[call-arg]

    def test_frozen(self) -> None:
        """SchedulerConfig is immutable."""
        config = SchedulerConfig()
        with pytest.raises(ValidationError):
            config.max_concurrent_processes = 10  # type: ignore[misc]


# ============================================================================
# Workspace Root Resolution
# ============================================================================


class TestSchedulerConfigWorkspaceRoot:
    """Tests for get_workspace_root() resolution order."""

    def test_explicit_root(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Explicit workspace_root wins over the environment."""
        monkeypatch.setenv("CODE_GRADER_WORKSPACE_ROOT", str(tmp_path / "env"))
        config = SchedulerConfig(workspace_root=tmp_path / "explicit")
        assert config.get_workspace_root() == tmp_path / "explicit"

    def test_env_root(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """CODE_GRADER_WORKSPACE_ROOT is used when no explicit root is set."""
        monkeypatch.setenv("CODE_GRADER_WORKSPACE_ROOT", str(tmp_path / "env"))
        assert SchedulerConfig().get_workspace_root() == tmp_path / "env"

    def test_default_root(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Falls back to <tmp>/code-grader."""
        monkeypatch.delenv("CODE_GRADER_WORKSPACE_ROOT", raising=False)
        assert SchedulerConfig().get_workspace_root() == Path(tempfile.gettempdir()) / "code-grader"

    def test_root_not_created(self, tmp_path: Path) -> None:
        """get_workspace_root() does not touch the filesystem."""
        root = tmp_path / "not-yet"
        assert SchedulerConfig(workspace_root=root).get_workspace_root() == root
        assert not root.exists()


# ============================================================================
# Settings
# ============================================================================


class TestSettings:
    """Tests for environment-driven Settings."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for var in (
            "CODE_GRADER_PYTHON_BIN",
            "CODE_GRADER_GXX_BIN",
            "CODE_GRADER_MOUNT_BIN",
            "CODE_GRADER_WORKSPACE_ROOT",
        ):
            monkeypatch.delenv(var, raising=False)
        settings = Settings()
        assert settings.python_bin == "python3"
        assert settings.gxx_bin == "g++"
        assert settings.unshare_bin == "unshare"
        assert settings.mount_bin == "mount"
        assert settings.workspace_root is None

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CODE_GRADER_PYTHON_BIN", "/opt/python/bin/python3.12")
        monkeypatch.setenv("CODE_GRADER_MOUNT_BIN", "/usr/bin/mount")
        settings = Settings()
        assert settings.python_bin == "/opt/python/bin/python3.12"
        assert settings.mount_bin == "/usr/bin/mount"

    def test_unknown_variables_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CODE_GRADER_NOT_A_SETTING", "x")
        assert not hasattr(Settings(), "not_a_setting")
