"""Custom exceptions for the image inventory engine."""


class InventoryError(Exception):
    """Base exception for all inventory-related errors."""

    pass


class InvalidReferenceError(InventoryError):
    """Raised when an image reference cannot be parsed."""

    pass


class ResolutionError(InventoryError):
    """Raised when an image cannot be obtained from any source."""

    pass


class RegistryConnectionError(ResolutionError):
    """Raised when unable to connect to the registry."""

    pass


class AuthenticationError(ResolutionError):
    """Raised when the registry rejects our credentials or token request."""

    pass


class ManifestError(ResolutionError):
    """Raised when manifest operations fail."""

    pass


class BlobDownloadError(ResolutionError):
    """Raised when a blob download fails or its digest does not match."""

    pass


class DaemonError(ResolutionError):
    """Raised when the local Docker daemon cannot export an image."""

    pass


class CacheError(InventoryError):
    """Raised when the artifact cache cannot be written."""

    pass


class TarReadError(InventoryError):
    """Raised when unable to read or parse tar file."""

    pass


class DatabaseError(InventoryError):
    """Raised when a package database cannot be decoded."""

    pass


class SbomError(InventoryError):
    """Raised when the external SBOM generator fails or emits garbage."""

    pass


class AnalysisError(InventoryError):
    """Raised when an image analysis fails under the fail-fast policy."""

    def __init__(self, image: str, cause: BaseException) -> None:
        super().__init__(f"{image}: {cause}")
        self.image = image
        self.cause = cause
