"""Typed errors raised by the vault engine.

Every error carries the HTTP status it maps to and a stable ``code`` so the
HTTP layer can translate it without knowing about each class.
"""


class VaultError(Exception):
    """Base exception for all vault errors."""

    status_code = 500
    code = "vault_error"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail or self.__class__.__name__
        super().__init__(self.detail)


class InvalidInput(VaultError):
    status_code = 400
    code = "invalid_input"


class Unauthorized(VaultError):
    status_code = 401
    code = "unauthorized"


class Forbidden(VaultError):
    status_code = 403
    code = "forbidden"


class NotFound(VaultError):
    status_code = 404
    code = "not_found"


class BlobNotFound(NotFound):
    """Raised when a location cannot be resolved in the blob store."""

    code = "blob_not_found"

    def __init__(self, location: str) -> None:
        self.location = location
        super().__init__(f"Blob not found: {location}")


class Conflict(VaultError):
    status_code = 409
    code = "conflict"


class PayloadTooLarge(VaultError):
    status_code = 413
    code = "payload_too_large"

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        super().__init__(f"Upload exceeds the maximum size of {max_bytes} bytes.")


class QuotaExceeded(VaultError):
    status_code = 413
    code = "quota_exceeded"

    def __init__(self, used_bytes: int, limit_bytes: int, requested_bytes: int) -> None:
        self.used_bytes = used_bytes
        self.limit_bytes = limit_bytes
        self.requested_bytes = requested_bytes
        super().__init__(
            f"Storage quota exceeded: {used_bytes} of {limit_bytes} bytes used, "
            f"upload needs {requested_bytes} more."
        )


class StorageFailure(VaultError):
    status_code = 500
    code = "storage_failure"
