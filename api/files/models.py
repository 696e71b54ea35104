"""
Models for the Files API
"""

import uuid
from datetime import datetime
from sqlmodel import SQLModel


class FileUploadResponse(SQLModel):
    """
    Response model for file upload.

    The iv is returned so clients can correlate uploads; the file key is
    never part of any response.
    """

    id: uuid.UUID
    display_name: str
    iv: str
    size: int | None = None
    created_at: datetime
    message: str = "File uploaded and encrypted successfully"
