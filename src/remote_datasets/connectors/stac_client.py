"""STAC client connector for catalog search."""

from typing import Any

import planetary_computer
from dagster import ConfigurableResource
from pystac_client import Client
from pystac_client.stac_api_io import StacApiIO

from remote_datasets.config.constants import DEFAULT_HTTP_TIMEOUT
from remote_datasets.connectors.settings import SettingsResource


def open_catalog(url: str, sign_assets: bool = False, timeout: float = DEFAULT_HTTP_TIMEOUT) -> Any:
    """Open a STAC API client.

    Opening fetches the landing page, so this is a network call.

    :param url: STAC API root URL
    :param sign_assets: Sign asset hrefs with the Planetary Computer token service
    :param timeout: HTTP timeout in seconds
    :returns: Configured STAC client
    """
    modifier = planetary_computer.sign_inplace if sign_assets else None
    return Client.open(url, modifier=modifier, stac_io=StacApiIO(timeout=timeout, max_retries=0))


class STACResource(ConfigurableResource[Any]):
    """STAC resource for creating STAC API clients."""

    settings: SettingsResource

    def create_client(self) -> Any:
        """Create STAC client.

        :returns: Configured STAC client
        """
        return open_catalog(
            self.settings.stac_api_url,
            sign_assets=self.settings.stac_sign_assets,
            timeout=self.settings.http_timeout,
        )
