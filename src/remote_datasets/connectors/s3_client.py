"""S3 connectors: boto3 clients for listing and pyarrow filesystems for ranged reads."""

from typing import Any

import boto3
from botocore import UNSIGNED
from botocore.config import Config
from dagster import ConfigurableResource
from pyarrow import fs

from remote_datasets.connectors.settings import SettingsResource
from remote_datasets.models.models import CredentialMode, StoreConfig


def create_client(config: StoreConfig) -> Any:
    """Create a boto3 S3 client for a store configuration.

    Anonymous clients are unsigned and receive no credentials. Every client
    uses the single configured timeout and makes one attempt per call.

    :param config: Store configuration
    :returns: Configured S3 client
    """
    client_config = Config(
        connect_timeout=config.timeout,
        read_timeout=config.timeout,
        retries={"total_max_attempts": 1},
    )
    client_kwargs: dict[str, Any] = {"endpoint_url": config.endpoint_url}

    if config.credential_mode is CredentialMode.ANONYMOUS:
        client_config = client_config.merge(Config(signature_version=UNSIGNED))
    elif config.credential_mode is CredentialMode.EXPLICIT:
        client_kwargs.update(
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            aws_session_token=config.session_token,
        )

    session = boto3.Session(region_name=config.region)
    return session.client("s3", config=client_config, **client_kwargs)


def create_filesystem(config: StoreConfig) -> fs.S3FileSystem:
    """Create a pyarrow S3 filesystem serving ranged object reads.

    Credentials follow the same rules as :func:`create_client`: anonymous
    filesystems never look up keys, explicit keys are passed only in explicit
    mode. Failed requests are not retried.

    :param config: Store configuration
    :returns: Configured S3FileSystem
    """
    options: dict[str, Any] = {
        "region": config.region,
        "endpoint_override": config.endpoint_url,
        "connect_timeout": config.timeout,
        "request_timeout": config.timeout,
        "retry_strategy": fs.AwsStandardS3RetryStrategy(max_attempts=0),
    }
    if config.credential_mode is CredentialMode.ANONYMOUS:
        options["anonymous"] = True
    elif config.credential_mode is CredentialMode.EXPLICIT:
        options.update(
            access_key=config.access_key_id,
            secret_key=config.secret_access_key,
            session_token=config.session_token,
        )
    return fs.S3FileSystem(**options)


class S3Resource(ConfigurableResource[Any]):
    """S3 resource for opening remote store handles."""

    settings: SettingsResource

    def get_handle(self) -> Any:
        """Open a store handle from settings.

        :returns: RemoteHandle for the configured bucket
        """
        from remote_datasets.storage import open_store

        return open_store(self.settings.store_config())
