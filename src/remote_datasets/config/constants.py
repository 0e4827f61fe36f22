"""Constants for store access, catalog search and raster reads."""

DEFAULT_HTTP_TIMEOUT = 60.0
DEFAULT_CLOUD_COVER_THRESHOLD = 30
DEFAULT_STAC_API_URL = "https://planetarycomputer.microsoft.com/api/stac/v1"
DEFAULT_COLLECTION = "sentinel-2-l2a"

CLOUD_COVER_PROPERTY = "eo:cloud_cover"

# Ambient variables that would otherwise leak into an anonymous session.
AMBIENT_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "AWS_PROFILE",
    "AWS_DEFAULT_REGION",
    "AWS_ENDPOINT_URL",
    "AWS_ENDPOINT_URL_S3",
)

PARQUET_SUFFIXES: tuple[str, ...] = (".parquet", ".parq")

VSI_CURL_PREFIX = "/vsicurl/"
VSI_S3_PREFIX = "/vsis3/"

GDAL_ENV_DEFAULTS: dict[str, str] = {
    "GDAL_DISABLE_READDIR_ON_OPEN": "EMPTY_DIR",
    "CPL_VSIL_CURL_ALLOWED_EXTENSIONS": ".tif,.tiff,.TIF,.TIFF",
}

NDVI_BAND_PREFERENCES: dict[str, list[str]] = {
    "red": ["B04", "red"],
    "nir": ["B08", "nir", "nir08"],
}

NDMI_BAND_PREFERENCES: dict[str, list[str]] = {
    "nir": ["B08", "nir", "nir08"],
    "swir": ["B11", "swir16", "B12", "swir22"],
}
