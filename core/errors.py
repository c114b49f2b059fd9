# core/errors.py
"""Typed errors for the image store.

Absence is usually reported as an empty result (None, [] or False). The
not-found error is raised only where an operation cannot proceed without the
record, e.g. confirming a blob or rendering one of its variants.
"""


class ImageStoreError(Exception):
    """Base exception for all image store errors."""


class ImageValidationError(ImageStoreError):
    """Raised when an upload or request is rejected before any storage I/O."""


class ImageNotFoundError(ImageStoreError):
    """Raised when a blob, variant or association required by an operation is absent."""

    def __init__(self, blob_id: str, what: str = "Image") -> None:
        self.blob_id = blob_id
        super().__init__(f"{what} not found: {blob_id}")


class ImageInUseError(ImageStoreError):
    """Raised when deleting a blob that is still referenced by an association."""

    def __init__(self, blob_id: str, references: int) -> None:
        self.blob_id = blob_id
        self.references = references
        super().__init__(f"Image {blob_id} is still used by {references} association(s)")


class StorageError(ImageStoreError):
    """Raised when the underlying database read/write fails. The transaction has been rolled back."""


class VariantGenerationError(ImageStoreError):
    """Raised when one variant cannot be rendered. Never fails the parent upload."""

    def __init__(self, blob_id: str, variant_type: str, reason: str) -> None:
        self.blob_id = blob_id
        self.variant_type = variant_type
        super().__init__(f"Variant '{variant_type}' of {blob_id} failed: {reason}")
