"""vcloud configuration loading and validation."""

import os
from pathlib import Path

import tomllib
from pydantic import BaseModel, field_validator


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "vcloud" / "config.toml"


class CloudConfig(BaseModel):
    """vcloud configuration model.

    Every run-time knob lives here and is passed explicitly to the code that
    needs it. CLI flags override file values via ``model_copy(update=...)``.

    Attributes:
        project: gcloud project that nodes are listed and addressed in.
        user: Remote user that operations run as on each node.
        parallelism: Default fan-out width. <0 all nodes, 0/1 sequential,
            N>=2 at most N nodes at once.
        fail_fast: Skip unstarted nodes after the first failing node.
        timeout: Per-operation deadline in seconds, None for no deadline.
        gcloud_bin: gcloud executable to invoke. Supports env var expansion.
        dry_run: Log gcloud commands instead of running them.
    """

    project: str = "vanadium-internal"
    user: str = "veyron"
    parallelism: int = -1
    fail_fast: bool = False
    timeout: float | None = None
    gcloud_bin: str = "gcloud"
    dry_run: bool = False

    @field_validator("project", "user", "gcloud_bin", mode="before")
    @classmethod
    def expand_env_vars(cls, v: str) -> str:
        """Allow ``$USER``-style references in project, user and gcloud_bin.

        Unset variables are left as written.
        """
        return os.path.expandvars(v)

    @field_validator("timeout")
    @classmethod
    def positive_timeout(cls, v: float | None) -> float | None:
        """Reject zero or negative deadlines; use None to disable."""
        if v is not None and v <= 0:
            raise ValueError("timeout must be positive (omit it for no deadline)")
        return v


def load_config(path: Path | None = None) -> CloudConfig:
    """Read the vcloud TOML file, falling back to built-in defaults.

    The file is optional: without it vcloud talks to the vanadium-internal
    project as user veyron, fanning out to every node at once. Keys absent
    from the file keep those defaults; CLI flags are applied later by the
    caller.

    Args:
        path: Config file to read instead of DEFAULT_CONFIG_PATH.

    Returns:
        CloudConfig: Validated settings.

    Raises:
        pydantic.ValidationError: If a key has the wrong type, or timeout is
            not positive.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    config_path = path or DEFAULT_CONFIG_PATH
    if not config_path.exists():
        return CloudConfig()

    with open(config_path, "rb") as fh:
        settings = tomllib.load(fh)
    return CloudConfig(**settings)
