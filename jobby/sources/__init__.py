from .base import SearchClient
from .jsearch import JSearchClient, KeyPool

from jobby.config import get_api_base, get_api_keys
from jobby.errors import ConfigurationError
from jobby.log import get_logger

log = get_logger(__name__)

__all__ = ["SearchClient", "JSearchClient", "KeyPool", "get_search_client"]


def get_search_client() -> SearchClient:
    keys = get_api_keys()
    if not keys:
        raise ConfigurationError("No JSearch credentials — set JSEARCH_API_KEYS in .env")
    log.info("Registered JSearch client with %d credential(s)", len(keys))
    return JSearchClient(KeyPool(keys), base_url=get_api_base())
