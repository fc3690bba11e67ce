"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with CODE_GRADER_ prefix.
    Example: CODE_GRADER_PYTHON_BIN=/opt/python3.12/bin/python3
    """

    model_config = SettingsConfigDict(
        env_prefix="CODE_GRADER_",
        extra="ignore",
    )

    # Toolchains (bare names are resolved on PATH)
    python_bin: str = "python3"
    node_bin: str = "node"
    javac_bin: str = "javac"
    java_bin: str = "java"
    gxx_bin: str = "g++"
    gcc_bin: str = "gcc"

    # Namespace isolation wrappers
    unshare_bin: str = "unshare"
    mount_bin: str = "mount"

    # Parent directory of per-execution workspaces (None = <tmp>/code-grader)
    workspace_root: Path | None = None


def get_settings() -> Settings:
    """Load settings from the current environment."""
    return Settings()
