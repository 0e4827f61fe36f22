"""Settings resource: the single adapter from environment variables to configuration."""

import os
from collections.abc import Mapping
from typing import Any, Union

from dagster import ConfigurableResource
from pydantic import PrivateAttr

from remote_datasets.config.constants import (
    DEFAULT_CLOUD_COVER_THRESHOLD,
    DEFAULT_COLLECTION,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_STAC_API_URL,
)
from remote_datasets.models.models import CredentialMode, StoreConfig

_REQUIRED = ("store_bucket",)

_CREDENTIAL_VARS = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN")

_DEFAULTS: dict[str, Any] = {
    "store_prefix": "",
    "store_credential_mode": CredentialMode.ANONYMOUS.value,
    "stac_api_url": DEFAULT_STAC_API_URL,
    "stac_collection": DEFAULT_COLLECTION,
    "stac_sign_assets": False,
    "http_timeout": DEFAULT_HTTP_TIMEOUT,
    "cloud_cover_threshold": DEFAULT_CLOUD_COVER_THRESHOLD,
}


class SettingsResource(ConfigurableResource[Any]):
    """Settings resource populated from environment variables.

    Each attribute reads the upper-cased variable of the same name.
    """

    store_bucket: Union[str, None] = None
    store_prefix: str = ""
    store_credential_mode: str = CredentialMode.ANONYMOUS.value
    aws_s3_endpoint: Union[str, None] = None
    aws_region: Union[str, None] = None
    stac_api_url: str = DEFAULT_STAC_API_URL
    stac_collection: str = DEFAULT_COLLECTION
    stac_sign_assets: bool = False
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    cloud_cover_threshold: int = DEFAULT_CLOUD_COVER_THRESHOLD

    # Credential variables captured from the mapping given to create()
    _credentials: Union[dict[str, str], None] = PrivateAttr(default=None)

    @staticmethod
    def create(swallow_errors: bool = False, environ: Mapping[str, str] | None = None) -> "SettingsResource":
        """Create SettingsResource from environment variables.

        :param swallow_errors: If True, ignore validation errors
        :param environ: Environment mapping, defaults to os.environ
        :returns: SettingsResource instance
        """
        env = os.environ if environ is None else environ
        env_values: dict[str, Any] = {}
        for attr_name, field_info in SettingsResource.model_fields.items():
            attr_type = field_info.annotation
            raw = env.get(attr_name.upper())
            if raw is None or raw == "":
                env_values[attr_name] = _DEFAULTS.get(attr_name)
            elif attr_type is bool:
                env_values[attr_name] = raw.strip().lower() in ("true", "1", "yes", "y", "on")
            elif attr_type is int:
                env_values[attr_name] = int(raw)
            elif attr_type is float:
                env_values[attr_name] = float(raw)
            else:
                env_values[attr_name] = raw

        settings = SettingsResource(**env_values)
        settings._credentials = {name: env[name] for name in _CREDENTIAL_VARS if env.get(name)}
        try:
            settings.validate_settings()
        except (TypeError, ValueError):
            if not swallow_errors:
                raise
        return settings

    def validate_settings(self) -> None:
        """Validate all required settings are present."""
        missing_vars = [name.upper() for name in _REQUIRED if not getattr(self, name, None)]
        if missing_vars:
            raise ValueError(f"Missing mandatory environment variables: {', '.join(missing_vars)}")
        if self.store_credential_mode not in {mode.value for mode in CredentialMode}:
            raise ValueError(f"Invalid STORE_CREDENTIAL_MODE: {self.store_credential_mode}")

    def store_config(self) -> StoreConfig:
        """Build the store configuration.

        Explicit keys are read from ``AWS_ACCESS_KEY_ID`` and
        ``AWS_SECRET_ACCESS_KEY`` only when the explicit mode is selected, from
        the same environment mapping the other settings came from.

        :returns: StoreConfig instance
        """
        mode = CredentialMode(self.store_credential_mode)
        credentials: dict[str, Any] = {}
        if mode is CredentialMode.EXPLICIT:
            env = os.environ if self._credentials is None else self._credentials
            credentials = {
                "access_key_id": env.get("AWS_ACCESS_KEY_ID"),
                "secret_access_key": env.get("AWS_SECRET_ACCESS_KEY"),
                "session_token": env.get("AWS_SESSION_TOKEN"),
            }
        return StoreConfig(
            bucket=self.store_bucket or "",
            endpoint_url=self.aws_s3_endpoint,
            credential_mode=mode,
            region=self.aws_region,
            prefix=self.store_prefix,
            timeout=self.http_timeout,
            **credentials,
        )

    def get_cloud_cover_threshold(self) -> int:
        """Get cloud cover threshold.

        :returns: Cloud cover threshold as integer
        """
        if self.cloud_cover_threshold is None:
            return DEFAULT_CLOUD_COVER_THRESHOLD
        return int(self.cloud_cover_threshold)
