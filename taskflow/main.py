# main.py
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from taskflow.config import LOG_LEVEL, LOG_FORMAT
from taskflow.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailable,
    ValidationError,
    WorkflowError,
)
from taskflow.logging_config import configure_logging
from taskflow.routers import api

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
ERROR_STATUS_CODES = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (StoreUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_code_for(error: WorkflowError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": exc.code, "message": exc.message, "details": exc.details}},
    )


def create_app() -> FastAPI:
    configure_logging(LOG_LEVEL, LOG_FORMAT)
    application = FastAPI(
        title="taskflow",
        redirect_slashes=False,
    )
    application.add_exception_handler(WorkflowError, workflow_error_handler)
    application.include_router(api.router)
    return application


app = create_app()
