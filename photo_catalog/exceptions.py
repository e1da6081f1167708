"""
Custom exception hierarchy for the photo catalog.

Validation problems are raised at the store boundary; extraction problems
are contained per image by the extraction worker.
"""


class PhotoCatalogError(Exception):
    """Base exception for all photo catalog errors."""
    pass


class ValidationError(PhotoCatalogError):
    """Raised when a caller supplies an invalid value (rating, id, sort key...)."""
    pass


class DatabaseError(PhotoCatalogError):
    """Raised when database operations fail."""
    pass


class MetadataExtractionError(PhotoCatalogError):
    """Raised when embedded tags cannot be read from an image."""
    pass


class ArchiveError(PhotoCatalogError):
    """Raised when a ZIP container or one of its entries cannot be read."""
    pass


class ThumbnailError(PhotoCatalogError):
    """Raised when an image cannot be decoded or its thumbnail written."""
    pass


class WatchError(PhotoCatalogError):
    """Raised when a watched root cannot be registered."""
    pass
