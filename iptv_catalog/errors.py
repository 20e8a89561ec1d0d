"""
Error taxonomy for the catalog service

Every failure raised by ingestion, guide refresh or persistence derives from
CatalogError so callers can keep serving the last good snapshot.
"""


class CatalogError(Exception):
    """Base class for all catalog service errors"""
    pass


class SourceFetchError(CatalogError):
    """Network or timeout failure while fetching one source document"""

    def __init__(self, url: str, message: str):
        super().__init__(f"{message} ({url})")
        self.url = url


class ParseError(CatalogError):
    """Malformed playlist entry or guide document fragment"""
    pass


class PersistenceError(CatalogError):
    """Durable store read or write failure"""
    pass


class ConfigurationError(CatalogError, ValueError):
    """Malformed configuration value (interval string, remap line, ...)"""
    pass


class IngestionError(CatalogError):
    """No playlist source could be resolved or every fetch failed"""
    pass
