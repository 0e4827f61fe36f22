"""Remote store handles, path references and ranged object reads."""

import os
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import pyarrow as pa
from botocore.exceptions import BotoCoreError, ClientError
from dagster import get_dagster_logger
from pyarrow import fs

from remote_datasets.config.constants import AMBIENT_CREDENTIAL_ENV_VARS
from remote_datasets.connectors.s3_client import create_client, create_filesystem
from remote_datasets.exceptions import ConfigurationError, NetworkError
from remote_datasets.models.models import CredentialMode, StoreConfig

logger = get_dagster_logger()


@contextmanager
def network_errors(action: str) -> Generator[None, None, None]:
    """Re-raise botocore and pyarrow I/O failures as NetworkError.

    :param action: Description of the operation for the error message
    """
    try:
        yield
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "Unknown")
        raise NetworkError(f"{action} failed ({code}): {e}") from e
    except BotoCoreError as e:
        raise NetworkError(f"{action} failed: {e}") from e
    except OSError as e:
        raise NetworkError(f"{action} failed: {e}") from e


def check_ambient_credentials(config: StoreConfig, environ: Mapping[str, str] | None = None) -> None:
    """Refuse anonymous sessions while ambient AWS variables are set.

    :param config: Store configuration
    :param environ: Environment mapping, defaults to os.environ
    :raises ConfigurationError: If anonymous mode conflicts with the environment
    """
    if config.credential_mode is not CredentialMode.ANONYMOUS:
        return
    env = os.environ if environ is None else environ
    conflicting = [name for name in AMBIENT_CREDENTIAL_ENV_VARS if env.get(name)]
    if conflicting:
        raise ConfigurationError(
            f"Anonymous access requested but ambient credential variables are set: {', '.join(conflicting)}. "
            "Unset them or choose the implicit credential mode."
        )


def open_store(config: StoreConfig, environ: Mapping[str, str] | None = None) -> "RemoteHandle":
    """Open a handle on a remote store without touching the network.

    :param config: Store configuration
    :param environ: Environment mapping checked for anonymous-mode conflicts
    :returns: RemoteHandle instance
    """
    check_ambient_credentials(config, environ)
    logger.debug(f"Opened store handle for s3://{config.bucket}/{config.prefix} ({config.credential_mode.value})")
    return RemoteHandle(config)


@dataclass(frozen=True)
class PathRef:
    """Reference to a location inside a store, bound to its handle."""

    handle: "RemoteHandle"
    key: str

    @property
    def uri(self) -> str:
        return f"s3://{self.handle.config.bucket}/{self.key}"

    @property
    def prefix(self) -> str:
        return f"{self.key}/" if self.key else ""


class RemoteHandle:
    """Session on one bucket.

    Holds the config, a boto3 client for listings and a pyarrow filesystem for
    ranged reads. Both are built on first use.
    """

    def __init__(self, config: StoreConfig, client: Any | None = None, filesystem: Any | None = None) -> None:
        self.config = config
        self._client = client
        self._filesystem = filesystem

    def __repr__(self) -> str:
        return f"RemoteHandle(bucket={self.config.bucket!r}, prefix={self.config.prefix!r})"

    @property
    def client(self) -> Any:
        if self._client is None:
            with network_errors(f"Create S3 client for {self.config.bucket}"):
                self._client = create_client(self.config)
        return self._client

    @property
    def filesystem(self) -> fs.FileSystem:
        if self._filesystem is None:
            with network_errors(f"Create S3 filesystem for {self.config.bucket}"):
                self._filesystem = create_filesystem(self.config)
        return self._filesystem

    def resolve_path(self, subpath: str = "", verify: bool = False) -> PathRef:
        """Resolve a subpath under the root prefix to a PathRef.

        :param subpath: Path relative to the root prefix
        :param verify: Check that at least one object exists under the path
        :returns: PathRef bound to this handle
        """
        ref = PathRef(handle=self, key=self.config.key_for(subpath))
        if verify:
            with network_errors(f"Verify {ref.uri}"):
                response = self.client.list_objects_v2(Bucket=self.config.bucket, Prefix=ref.prefix, MaxKeys=1)
            if not response.get("Contents"):
                raise NetworkError(f"No objects found under {ref.uri}")
        return ref

    def list_objects(self, key_prefix: str) -> list[dict[str, Any]]:
        """List every object under a key prefix with its size.

        :param key_prefix: Key prefix relative to the bucket root
        :returns: Object entries with ``Key`` and ``Size``
        """
        objects: list[dict[str, Any]] = []
        with network_errors(f"List s3://{self.config.bucket}/{key_prefix}"):
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=key_prefix):
                objects.extend(page.get("Contents", []))
        return sorted(objects, key=lambda obj: obj["Key"])

    def open_input(self, key: str) -> pa.NativeFile:
        """Open an object for ranged reads.

        Each read on the returned file is served by a ranged GET, so parquet
        footers and column chunks are fetched without downloading the object.

        :param key: Object key relative to the bucket root
        :returns: Seekable, read-only file
        """
        with network_errors(f"Open s3://{self.config.bucket}/{key}"):
            return self.filesystem.open_input_file(f"{self.config.bucket}/{key}")

    # Defined last: inside the class body the name shadows the builtin.
    def list(self, path: str = "", recursive: bool = False) -> list[str]:
        """List paths under a location.

        Returned paths are relative to the bucket root. Without ``recursive``
        only immediate children are returned, directories ending in ``/``.

        :param path: Path relative to the root prefix
        :param recursive: Return every object key under the path
        :returns: Sorted list of paths
        """
        ref = self.resolve_path(path)
        if recursive:
            return [obj["Key"] for obj in self.list_objects(ref.prefix) if obj["Key"] != ref.prefix]

        paths: list[str] = []
        with network_errors(f"List {ref.uri}"):
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=ref.prefix, Delimiter="/"):
                paths.extend(p["Prefix"] for p in page.get("CommonPrefixes", []))
                paths.extend(obj["Key"] for obj in page.get("Contents", []) if obj["Key"] != ref.prefix)
        return sorted(paths)
