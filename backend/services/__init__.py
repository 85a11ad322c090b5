"""Services package."""
from services.directory_api import DirectoryClient, get_directory_client
from services.nango import NangoClient, get_nango_client

__all__ = ["DirectoryClient", "get_directory_client", "NangoClient", "get_nango_client"]
