import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from pipeyard.errors import EngineError

logger = logging.getLogger(__name__)

HTTP_STATUS_TO_ERROR_CODE = {
    400: 'VALIDATION_ERROR',
    401: 'UNAUTHORIZED',
    403: 'ACCESS_DENIED',
    404: 'NOT_FOUND',
    409: 'CONFLICT',
    422: 'VALIDATION_ERROR',
}


def _error_response(status_code: int, message, error_code: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            {
                'success': False,
                'message': message,
                'error_code': error_code,
                'details': details,
            }
        ),
    )


async def engine_error_handler(request: Request, exc: EngineError):
    logger.warning('%s %s failed with %s: %s', request.method, request.url.path, exc.code, exc.message)
    return _error_response(exc.status_code, exc.message, exc.code, exc.details)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(422, 'Invalid request data', 'VALIDATION_ERROR', exc.errors())


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    error_code = HTTP_STATUS_TO_ERROR_CODE.get(exc.status_code, 'INTERNAL_ERROR')
    return _error_response(exc.status_code, exc.detail, error_code)


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.exception('Database constraint violation on %s %s', request.method, request.url.path)
    return _error_response(409, 'Database constraint violation', 'CONFLICT')
