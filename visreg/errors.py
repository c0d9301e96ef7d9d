"""Exception types raised across the capture and comparison pipeline."""

from __future__ import annotations


class VisualRegressionError(Exception):
    """Base class for all visual regression failures."""


class CredentialsMissing(VisualRegressionError):
    """Remote grid credentials are not configured. Stops the whole run."""


class SessionFault(VisualRegressionError):
    """A remote browser session reported a fault.

    The remote automation layer only surfaces unstructured messages, so the
    original message is kept verbatim for classification.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TunnelTimeout(VisualRegressionError):
    """The local tunnel never reported itself as ready."""


class PageLoadTimeout(VisualRegressionError):
    """document.readyState never reached 'complete'."""


class PageVerificationTimeout(VisualRegressionError):
    """The page title never indicated that a real page was loaded."""


class ImageNotFound(VisualRegressionError, FileNotFoundError):
    pass


class InvalidCrop(VisualRegressionError, ValueError):
    pass


class WidthMismatch(VisualRegressionError, ValueError):
    pass


class StorageError(VisualRegressionError):
    """Object storage failed for a reason other than a missing key."""


class StorageNotFound(StorageError):
    """The requested key does not exist in the object store."""

    def __init__(self, bucket: str, key: str):
        super().__init__(f"No such key: {bucket}/{key}")
        self.bucket = bucket
        self.key = key


class ManifestError(StorageError):
    pass
