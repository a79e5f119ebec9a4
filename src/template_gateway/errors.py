"""
Error taxonomy for the template gateway.

Every workflow failure is raised as a subclass of GatewayError. Errors are
terminal for the operation that raised them; nothing in the core retries.
Each error carries enough context (document id, HTTP status, response body)
for the HTTP layer to render a precise message.
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway failures."""


class ConfigurationError(GatewayError):
    """Required configuration values are missing or invalid."""


# Ingest

class InvalidArchiveError(GatewayError):
    """Uploaded bytes are not a readable ZIP archive."""


class MissingManifestError(GatewayError):
    """The archive does not contain a manifest file."""


class ManifestParseError(GatewayError):
    """The manifest could not be parsed as tabular data."""


class NoValidEntriesError(GatewayError):
    """The manifest parsed but no row carried both a docid and a name."""


# Registry

class PersistenceError(GatewayError):
    def __init__(self, key: str, cause: BaseException, operation: str = "upsert registry entry with docid"):
        self.key = key
        self.cause = cause
        self.operation = operation
        super().__init__(f"Failed to {operation} '{key}': {cause}")

    @property
    def docid(self) -> str:
        return self.key


class NotFoundError(GatewayError):
    def __init__(self, docid: str):
        self.docid = docid
        super().__init__(f"Registry entry with docid '{docid}' not found")


class NotConvertedError(GatewayError):
    def __init__(self, docid: str):
        self.docid = docid
        super().__init__(
            f"Registry entry with docid '{docid}' has no converted file path. "
            "Convert the document first."
        )


class ValidationError(GatewayError):
    """A registry entry is missing data required for deployment."""


# Storage and conversion

class StorageError(GatewayError):
    def __init__(self, bucket: str, path: str, message: str):
        self.bucket = bucket
        self.path = path
        super().__init__(f"Blob store operation failed for {bucket}/{path}: {message}")


class ConversionTimeoutError(GatewayError):
    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(f"Conversion timeout exceeded for '{filename}' - file may be too complex")


class ConversionError(GatewayError):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Conversion service failed: {status_code} - {body}")


class ContainerError(GatewayError):
    """The document container could not be read or patched."""


# Template Platform

class PlatformRequestError(GatewayError):
    """A Template Platform call returned a non-success response."""

    action = "Template Platform request"

    def __init__(self, status_code: Optional[int], body: str = ""):
        self.status_code = status_code
        self.body = body
        message = f"{self.action} failed"
        if status_code is not None:
            message = f"{message}: {status_code}"
        if body:
            message = f"{message} - {body}"
        super().__init__(message)


class AuthenticationError(PlatformRequestError):
    action = "Template Platform authentication"


class UploadError(PlatformRequestError):
    action = "Template Platform upload"


class TemplateCreationError(PlatformRequestError):
    action = "Template Platform template creation"

    @property
    def invalid_definition(self) -> bool:
        return self.status_code == 400


class TemplateDeletionError(PlatformRequestError):
    action = "Template Platform template deletion"

    @property
    def not_found(self) -> bool:
        return self.status_code == 404
