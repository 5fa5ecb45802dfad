"""Runtime settings for aumai-imagespec.

Settings are read from environment variables by :meth:`Settings.from_env` and
passed explicitly to the registry client, layer builder and assembler.

Environment Variables:
    AUMAI_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: WARNING
    AUMAI_HTTP_TIMEOUT: Archive download timeout in seconds. Default: 60
    AUMAI_CHUNK_SIZE: Streaming read size in bytes. Default: 65536
    AUMAI_MAX_WORKERS: Layers built concurrently. Default: 1 (sequential)
    AUMAI_PLATFORM: os/architecture picked from base image indexes. Default: linux/amd64
    AUMAI_REGISTRY_USERNAME: Registry user for token and basic auth. Default: unset
    AUMAI_REGISTRY_PASSWORD: Registry password or token. Default: unset
    AUMAI_REGISTRY_AUTH: oras auth backend, "token" or "basic". Default: token
    AUMAI_INSECURE_REGISTRIES: Comma separated registries reached over plain HTTP.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = ["Settings"]

_ENV_PREFIX = "AUMAI_"


class Settings(BaseModel):
    """Build and registry settings."""

    model_config = ConfigDict(frozen=True)

    log_level: str = "WARNING"
    http_timeout: float = Field(default=60.0, gt=0)
    chunk_size: int = Field(default=65536, gt=0)
    max_workers: int = Field(default=1, ge=1)
    platform: str = "linux/amd64"
    registry_username: str | None = None
    registry_password: str | None = None
    registry_auth: str = "token"
    insecure_registries: tuple[str, ...] = ()

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("platform")
    @classmethod
    def _check_platform(cls, value: str) -> str:
        os_name, _, arch = value.partition("/")
        if not os_name or not arch:
            raise ValueError(f"platform must be <os>/<architecture>, got {value!r}")
        return value

    @field_validator("registry_auth")
    @classmethod
    def _check_auth(cls, value: str) -> str:
        value = value.lower()
        if value not in ("token", "basic"):
            raise ValueError(f"registry_auth must be 'token' or 'basic', got {value!r}")
        return value

    @property
    def platform_os(self) -> str:
        return self.platform.split("/", 1)[0]

    @property
    def platform_architecture(self) -> str:
        return self.platform.split("/", 1)[1]

    @property
    def credentials(self) -> tuple[str, str] | None:
        if self.registry_username is None or self.registry_password is None:
            return None
        return (self.registry_username, self.registry_password)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``AUMAI_*`` environment variables."""
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for field_name in cls.model_fields:
            raw = env.get(_ENV_PREFIX + field_name.upper())
            if raw is None or raw == "":
                continue
            if field_name == "insecure_registries":
                values[field_name] = tuple(
                    part.strip() for part in raw.split(",") if part.strip()
                )
            else:
                values[field_name] = raw
        return cls.model_validate(values)

    def __repr__(self) -> str:
        return (
            f"Settings(log_level={self.log_level}, "
            f"http_timeout={self.http_timeout}, "
            f"max_workers={self.max_workers}, "
            f"platform={self.platform}, "
            f"registry_auth={self.registry_auth}, "
            f"insecure_registries={list(self.insecure_registries)})"
        )
