"""Dagster definitions for the remote dataset workflows."""

from dagster import Definitions, load_assets_from_modules

from remote_datasets import assets  # noqa: TID252
from remote_datasets.connectors.s3_client import S3Resource
from remote_datasets.connectors.settings import SettingsResource
from remote_datasets.connectors.stac_client import STACResource

all_assets = load_assets_from_modules([assets])

settings = SettingsResource.create(swallow_errors=True)

defs = Definitions(
    assets=all_assets,
    resources={
        "s3": S3Resource(settings=settings),
        "stac": STACResource(settings=settings),
        "settings": settings,
    },
)
