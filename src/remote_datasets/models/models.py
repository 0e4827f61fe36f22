"""Data models for remote store access, partitioning and catalog results."""

from datetime import datetime as dt
from enum import Enum
from typing import Any, Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, Field as PydanticField, ValidationError, field_validator, model_validator

from remote_datasets.config.constants import CLOUD_COVER_PROPERTY, DEFAULT_HTTP_TIMEOUT
from remote_datasets.exceptions import ConfigurationError

PartitionType = Literal["string", "int64", "float64"]


class _FrozenModel(BaseModel):
    """Frozen model whose validation failures surface as ConfigurationError."""

    model_config = ConfigDict(frozen=True)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e


class CredentialMode(str, Enum):
    """How a store session obtains credentials."""

    ANONYMOUS = "anonymous"
    IMPLICIT = "implicit"
    EXPLICIT = "explicit"


class StoreConfig(_FrozenModel):
    """Immutable object-store configuration.

    :param bucket: Bucket or container name
    :param endpoint_url: Optional endpoint override for non-AWS stores
    :param credential_mode: Anonymous, implicit (boto3 default chain) or explicit keys
    :param access_key_id: Access key, explicit mode only
    :param secret_access_key: Secret key, explicit mode only
    :param session_token: Optional session token, explicit mode only
    :param region: Optional region name
    :param prefix: Root path prefix inside the bucket
    :param timeout: Connect and read timeout in seconds for every call
    """

    bucket: str = PydanticField(..., description="Bucket or container identifier")
    endpoint_url: str | None = PydanticField(default=None, description="Endpoint override URL")
    credential_mode: CredentialMode = PydanticField(default=CredentialMode.ANONYMOUS)
    access_key_id: str | None = PydanticField(default=None, repr=False)
    secret_access_key: str | None = PydanticField(default=None, repr=False)
    session_token: str | None = PydanticField(default=None, repr=False)
    region: str | None = PydanticField(default=None)
    prefix: str = PydanticField(default="", description="Root path prefix")
    timeout: float = PydanticField(default=DEFAULT_HTTP_TIMEOUT, gt=0)

    @field_validator("bucket")
    @classmethod
    def _check_bucket(cls, value: str) -> str:
        value = value.strip()
        if not value or "/" in value:
            raise ValueError(f"Invalid bucket name: {value!r}")
        return value

    @field_validator("prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        return value.strip("/")

    @model_validator(mode="after")
    def _check_credentials(self) -> "StoreConfig":
        has_keys = any([self.access_key_id, self.secret_access_key, self.session_token])
        if self.credential_mode is CredentialMode.EXPLICIT:
            if not (self.access_key_id and self.secret_access_key):
                raise ValueError("Explicit credential mode requires access_key_id and secret_access_key")
        elif has_keys:
            raise ValueError(
                f"Credential keys were given but credential_mode is {self.credential_mode.value!r}"
            )
        return self

    def key_for(self, subpath: str) -> str:
        """Join the root prefix and a subpath into a bucket key.

        :param subpath: Path relative to the root prefix
        :returns: Key relative to the bucket root
        """
        parts = [p for p in (self.prefix, subpath.strip("/")) if p]
        return "/".join(parts)


class PartitionField(_FrozenModel):
    """One directory-encoded partition key.

    :param name: Column name the key materializes as
    :param type: Declared type, or None to infer from observed values
    """

    name: str
    type: PartitionType | None = None

    def parse(self, raw: str) -> Any:
        """Parse a directory segment as this field's declared type.

        :param raw: Raw segment value
        :returns: Typed value
        :raises ValueError: If the value does not parse
        """
        if self.type == "int64":
            return int(raw)
        if self.type == "float64":
            return float(raw)
        return raw


class PartitionScheme(_FrozenModel):
    """Ordered partition keys encoded in the directory layout.

    ``directory`` flavor reads ``<category>/<year>/file.parquet`` positionally,
    ``hive`` flavor reads ``category=birds/year=2022/file.parquet`` by name and
    ``auto`` reads positionally, dropping a ``<name>=`` prefix where present.
    With ``strict`` set, a value that does not parse as its declared type is
    an error; otherwise it becomes null and its rows are kept.
    """

    keys: tuple[PartitionField, ...] = ()
    flavor: Literal["auto", "directory", "hive"] = "auto"
    strict: bool = False

    @field_validator("keys")
    @classmethod
    def _unique_names(cls, value: tuple[PartitionField, ...]) -> tuple[PartitionField, ...]:
        names = [f.name for f in value]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate partition keys: {names}")
        return value

    @classmethod
    def from_names(cls, names: list[str] | tuple[str, ...], **kwargs: Any) -> "PartitionScheme":
        """Build a scheme with inferred types from key names.

        :param names: Partition key names in directory order
        :returns: PartitionScheme instance
        """
        return cls(keys=tuple(PartitionField(name=n) for n in names), **kwargs)

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.keys]

    def field(self, name: str) -> PartitionField:
        return next(f for f in self.keys if f.name == name)


class CatalogItem(BaseModel):
    """One catalog search result.

    :param id: Item ID
    :param collection: Collection ID
    :param datetime: Acquisition datetime
    :param bbox: Item bounding box (west, south, east, north)
    :param properties: Scalar metadata used for selection
    :param assets: Asset hrefs keyed by band/layer name
    """

    model_config = ConfigDict(frozen=True)

    id: str = PydanticField(..., description="ID of the item")
    collection: str | None = PydanticField(default=None, description="Collection the item belongs to")
    datetime: dt | None = PydanticField(default=None, description="Acquisition datetime")
    bbox: tuple[float, ...] | None = PydanticField(default=None, description="Item bounding box")
    properties: dict[str, Any] = PydanticField(default_factory=dict, description="Item metadata")
    assets: dict[str, str] = PydanticField(default_factory=dict, description="Asset hrefs by key")

    @classmethod
    def from_pystac(cls, item: Any) -> "CatalogItem":
        """Create CatalogItem from a pystac Item.

        :param item: pystac Item
        :returns: CatalogItem instance
        """
        return cls(
            id=item.id,
            collection=item.collection_id,
            datetime=item.datetime,
            bbox=tuple(item.bbox) if item.bbox else None,
            properties=dict(item.properties),
            assets={key: asset.href for key, asset in item.assets.items()},
        )

    @property
    def cloud_cover(self) -> float | None:
        value = self.properties.get(CLOUD_COVER_PROPERTY)
        return float(value) if value is not None else None


class IndexStatistics(BaseModel):
    """Summary of a computed spectral index over a scene window.

    :param index: Index name, e.g. ``ndvi``
    :param item_id: Catalog item the bands came from
    :param mean: Mean value
    :param std: Standard deviation
    :param min: Minimum value
    :param max: Maximum value
    :param valid_pixel_count: Number of non-NaN pixels
    """

    index: str = PydanticField(..., description="Spectral index name")
    item_id: str = PydanticField(..., description="Source catalog item ID")
    mean: float = PydanticField(..., description="Mean value over valid pixels")
    std: float = PydanticField(..., description="Standard deviation over valid pixels")
    min: float = PydanticField(..., description="Minimum value over valid pixels")
    max: float = PydanticField(..., description="Maximum value over valid pixels")
    valid_pixel_count: int = PydanticField(..., description="Number of valid pixels")

    @classmethod
    def from_array(cls, index: str, item_id: str, array: Any) -> "IndexStatistics":
        """Create IndexStatistics from a numpy array.

        :param index: Index name
        :param item_id: Source item ID
        :param array: Index values, NaN where invalid
        :returns: IndexStatistics instance
        """
        array = np.asarray(array, dtype="float32")
        valid_pixels = array[~np.isnan(array)]

        return cls(
            index=index,
            item_id=item_id,
            mean=float(np.mean(valid_pixels)) if valid_pixels.size > 0 else 0.0,
            std=float(np.std(valid_pixels)) if valid_pixels.size > 0 else 0.0,
            min=float(np.min(valid_pixels)) if valid_pixels.size > 0 else 0.0,
            max=float(np.max(valid_pixels)) if valid_pixels.size > 0 else 0.0,
            valid_pixel_count=int(valid_pixels.size),
        )
