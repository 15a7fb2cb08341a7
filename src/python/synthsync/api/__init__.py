"""Remote catalog clients."""

from synthsync.api.catalogs import SynplicityCatalogApi, ZCatalogApi
from synthsync.api.client import (
    CatalogApi,
    CatalogApiError,
    MapItem,
    MapPage,
    parse_published_at,
)
from synthsync.api.http import HttpClient, HttpError

__all__ = [
    "CatalogApi",
    "CatalogApiError",
    "HttpClient",
    "HttpError",
    "MapItem",
    "MapPage",
    "SynplicityCatalogApi",
    "ZCatalogApi",
    "parse_published_at",
]
