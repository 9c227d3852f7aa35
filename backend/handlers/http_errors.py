import logging

from fastapi import HTTPException

from operators.errors import (
    ConflictError,
    EditorError,
    NotFoundError,
    StateError,
    TranscodingFailure,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: list[tuple[type[EditorError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StateError, 409),
    (TranscodingFailure, 502),
]


def to_http_exception(error: EditorError) -> HTTPException:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(
                status_code=status_code,
                detail={"code": error.code, "message": str(error)},
            )
    logger.error("Unhandled editor error: %s", error)
    return HTTPException(
        status_code=500,
        detail={"code": error.code, "message": str(error)},
    )
