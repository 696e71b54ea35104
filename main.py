"""
Main entrypoint for the FastAPI server
"""

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from sqlalchemy import text

from core.config import get_settings
from core.deps import SessionDep
from core.errors import (
    BlobMissingError,
    CorruptRecordError,
    CryptoError,
    FileServiceError,
    FormatError,
    NotFoundError,
    StoreError,
)
from core.lifespan import lifespan
from core.logger import logger

from api.files.routes import router as files_router
from api.retention.routes import router as retention_router


# Customize route id's
# Helpful for creating sensible names in the client
def custom_generate_unique_id(route: APIRoute):
    """ Generate unique route IDs based on route name """
    return f"{route.name}"  # these must be unique


# Create schema & router
app = FastAPI(
    lifespan=lifespan,
    generate_unique_id_function=custom_generate_unique_id
)

# CORS settings to allow client-server communication
# Set with env variable
origins = [get_settings().client_origin] if get_settings().client_origin else []

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Map service errors to HTTP responses
ERROR_STATUS = [
    (FormatError, status.HTTP_400_BAD_REQUEST),
    (CorruptRecordError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (BlobMissingError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (CryptoError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (StoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


@app.exception_handler(FileServiceError)
async def file_service_error_handler(request: Request, exc: FileServiceError):
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        # Internal details stay in the log
        return JSONResponse(status_code=status_code, content={"detail": exc.detail})
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


# REST routers
# Add each api/feature folder here
API_PREFIX = "/api/v1"

app.include_router(files_router, prefix=API_PREFIX)
app.include_router(retention_router, prefix=API_PREFIX)


# Health check endpoint for monitoring
@app.get("/api/health", tags=["health"])
def health_check(session: SessionDep):
    session.exec(text("SELECT 1"))
    return {"status": "ok", "message": "Encrypted file service is running"}


if __name__ == "__main__":
    # For debugging purposes
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
