# SPDX-License-Identifier: MPL-2.0
"""Audit configuration.

Configuration is an explicit, immutable value: it is built once at process
start and handed to the components that need it. Nothing reads it from
module globals.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from veracity.core.exceptions import ConfigurationError
from veracity.core.models import DEFAULT_REGISTRY, TrustedIssuer

DEFAULT_ATTESTATION_URL_TEMPLATE = (
    "https://storage.googleapis.com/google-rebuild-attestations/cratesio/"
    "{name}/{version}/{name}-{version}.crate/rebuild.intoto.jsonl"
)

# Environment variables that override values from the config file
ENV_OVERRIDES = {
    "VERACITY_REGISTRY_URL": "registry_url",
    "VERACITY_ATTESTATION_URL_TEMPLATE": "attestation_url_template",
    "VERACITY_TIME_BUDGET": "time_budget",
    "VERACITY_BUILD_TIMEOUT": "build_timeout",
    "VERACITY_NETWORK_ISOLATION": "network_isolation",
}


class AuditConfig(BaseModel):
    """Configuration for an audit run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    trusted_issuers: Tuple[TrustedIssuer, ...] = ()
    require_trusted_issuers: bool = True

    registry_url: str = DEFAULT_REGISTRY
    attestation_url_template: str = DEFAULT_ATTESTATION_URL_TEMPLATE

    # Network
    request_timeout: float = Field(default=15.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=0.5, ge=0)
    max_concurrency: int = Field(default=4, ge=1)
    registry_delay: float = Field(default=0.0, ge=0)

    # Budgets
    time_budget: float = Field(default=1800.0, gt=0)
    build_timeout: float = Field(default=900.0, gt=0)
    log_limit_bytes: int = Field(default=16 * 1024, ge=256)

    # Sandbox
    network_isolation: Literal["offline", "unshare"] = "offline"
    memory_limit_bytes: Optional[int] = Field(default=4 * 1024**3, gt=0)
    cpu_limit_seconds: Optional[int] = Field(default=None, gt=0)
    open_files_limit: Optional[int] = Field(default=4096, gt=0)
    cargo_binary: str = "cargo"
    default_toolchain: str = "stable"

    lockfile_concurrency: int = Field(default=2, ge=1)

    def require_issuers(self) -> Tuple[TrustedIssuer, ...]:
        """Return the trusted issuers, failing when none are configured but required."""
        if self.require_trusted_issuers and not self.trusted_issuers:
            raise ConfigurationError(
                "No trusted issuer configured; provenance cannot be evaluated",
                {"setting": "trusted_issuers"},
            )
        return self.trusted_issuers


def build_config(
    values: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> AuditConfig:
    """Build a validated configuration.

    Precedence, lowest first: ``values``, environment variables, ``overrides``.

    Raises:
        ConfigurationError: If the values do not form a valid configuration.
    """
    merged: Dict[str, Any] = dict(values or {})
    environ = os.environ if environ is None else environ
    for variable, setting in ENV_OVERRIDES.items():
        if variable in environ:
            merged[setting] = environ[variable]
    merged.update({key: value for key, value in (overrides or {}).items() if value is not None})
    try:
        return AuditConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid configuration: {exc.error_count()} error(s)",
            {"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> AuditConfig:
    """Load configuration from a JSON file.

    Args:
        path: Path to a JSON configuration file. Defaults are used when omitted.
        environ: Environment to read overrides from (``os.environ`` by default).
        **overrides: Values taking precedence over the file, e.g. from the CLI.
    """
    values: Dict[str, Any] = {}
    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                values = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read configuration file {path}: {exc}") from exc
        if not isinstance(values, dict):
            raise ConfigurationError(f"Configuration file {path} must hold a JSON object")
    return build_config(values, environ, overrides)
