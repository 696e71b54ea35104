"""
Error taxonomy for the encrypted file service.

Services raise these; main.py maps them to HTTP responses.
"""


class FileServiceError(Exception):
    """Base class for all file service errors"""

    detail = "File service error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.detail)
        self.message = message or self.detail


class FormatError(FileServiceError):
    """Uploaded data is malformed or has a disallowed content type"""

    detail = "Invalid tabular data"


class CryptoError(FileServiceError):
    """Key material has the wrong shape, or decryption failed"""

    detail = "Decryption failed"


class NotFoundError(FileServiceError):
    """A record or blob does not exist"""

    detail = "Not found"


class CorruptRecordError(FileServiceError):
    """Stored key material is unusable; the record must not be decrypted"""

    detail = "Invalid encryption key or IV"


class BlobMissingError(FileServiceError):
    """A metadata record exists but its blob does not"""

    detail = "Stored file content is missing"


class StoreError(FileServiceError):
    """The metadata store or blob store failed"""

    detail = "Storage backend failure"


class ScheduledTaskError(FileServiceError):
    """A retention sweep failed for a single candidate"""

    detail = "Scheduled task failed"
