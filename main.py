"""
Main entrypoint for the FastAPI server
"""

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.config import get_settings
from core.exceptions import ErrorCode, FileVaultError
from core.lifespan import lifespan
from core.logger import logger
from core.models import ErrorResponse

from api.files.routes import router as files_router


# Customize route id's
# Helpful for creating sensible names in the client
def custom_generate_unique_id(route: APIRoute):
    """ Generate unique route IDs based on route name """
    return f"{route.name}"  # these must be unique


# Create schema & router
app = FastAPI(
    title="FileVault API",
    lifespan=lifespan,
    generate_unique_id_function=custom_generate_unique_id
)

# CORS settings to allow client-server communication
# Set with env variable
if get_settings().CLIENT_ORIGIN:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[get_settings().CLIENT_ORIGIN],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _error_response(
    status_code: int, message: str, error: str, details=None
) -> JSONResponse:
    body = ErrorResponse(message=message, error=error, details=details)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body, exclude_none=True),
    )


@app.exception_handler(FileVaultError)
async def file_vault_error_handler(request: Request, exc: FileVaultError):
    show = exc.always_show_details or not get_settings().is_production
    if exc.status_code >= 500:
        logger.error("%s %s failed: %r", request.method, request.url.path, exc)
    return _error_response(
        exc.status_code,
        exc.message,
        exc.code.value,
        exc.details if show else None,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
        for error in exc.errors()
    ]
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Invalid request",
        ErrorCode.VALIDATION_ERROR.value,
        {"errors": errors},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    error = (
        ErrorCode.NOT_FOUND
        if exc.status_code == status.HTTP_404_NOT_FOUND
        else ErrorCode.VALIDATION_ERROR
        if exc.status_code < 500
        else ErrorCode.INTERNAL_ERROR
    )
    return _error_response(exc.status_code, str(exc.detail), error.value)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    details = None if get_settings().is_production else {"reason": str(exc)}
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        ErrorCode.INTERNAL_ERROR.value,
        details,
    )


# REST routers
# Add each api/feature folder here
API_PREFIX = "/api/v1"

app.include_router(files_router, prefix=API_PREFIX)


# Health check endpoint for monitoring
@app.get("/api/health", tags=["health"])
def health_check():
    return {"status": "ok", "message": "FileVault API is running"}


if __name__ == "__main__":
    # For debugging purposes
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
