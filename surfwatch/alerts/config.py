"""
Configuration loader for the alert worker.

Uses Pydantic Settings for environment variable parsing, with SSM parameter
resolution in non-local environments.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from functools import lru_cache

import boto3
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from surfwatch.alerts.civil_time import get_zone

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Alert worker configuration loaded from environment variables.

    In production (APP_ENV != 'local'), environment variables with an
    ``_SSM_PARAM`` suffix are resolved via AWS Systems Manager Parameter
    Store before constructing the settings object.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Civil zone of the schedule, tide tables and daylight window
    timezone: str = "Europe/Madrid"
    check_minute: int = Field(default=10, ge=0, le=59)

    min_consecutive_hours: int = Field(default=2, ge=1)
    tide_window_hours: float = Field(default=3.0, gt=0)
    context_hours: float = Field(default=4.0, ge=0)

    tide_cache_capacity: int = Field(default=256, ge=1)
    civil_parse_cache_capacity: int = Field(default=1024, ge=1)
    default_tide_port_id: str = "72"

    # Unset means state is kept in memory for the life of the process
    database_url: SecretStr | None = None
    aws_region: str = "eu-west-1"
    log_level: str = "INFO"

    run_log_max_entries: int = Field(default=48, ge=1)
    notification_log_max_entries: int = Field(default=5000, ge=1)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        get_zone(value)
        return value


SSM_SUFFIX = "_SSM_PARAM"
_SSM_BATCH_SIZE = 10


def _ssm_references(environ: Mapping[str, str]) -> dict[str, str]:
    """Map ``FOO`` to the parameter name held in ``FOO_SSM_PARAM``."""
    return {
        key[: -len(SSM_SUFFIX)]: value
        for key, value in environ.items()
        if key.endswith(SSM_SUFFIX) and value
    }


def _resolve_ssm_params() -> None:
    """Inject SSM parameter values for every ``*_SSM_PARAM`` variable.

    ``DATABASE_URL_SSM_PARAM=/surfwatch/prod/db-url`` makes the decrypted
    value of ``/surfwatch/prod/db-url`` available as ``DATABASE_URL``.
    Parameters SSM does not know are logged and left unset.
    """
    references = _ssm_references(os.environ)
    if not references:
        return

    ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "eu-west-1"))

    names = sorted(set(references.values()))
    resolved: dict[str, str] = {}
    for i in range(0, len(names), _SSM_BATCH_SIZE):
        response = ssm.get_parameters(
            Names=names[i : i + _SSM_BATCH_SIZE], WithDecryption=True
        )
        resolved.update({p["Name"]: p["Value"] for p in response["Parameters"]})
        for missing in response.get("InvalidParameters", []):
            logger.warning("SSM parameter not found: %s", missing)

    for target, name in references.items():
        if name in resolved:
            os.environ[target] = resolved[name]
    logger.info("Resolved %d of %d SSM parameters", len(resolved), len(names))


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Load and cache application settings.

    1. Check ``APP_ENV`` environment variable.
    2. If not ``local``, resolve SSM parameters into the environment.
    3. Construct and return the ``Settings`` object.
    """
    app_env = os.environ.get("APP_ENV", "local")
    if app_env != "local":
        _resolve_ssm_params()

    return Settings()
