from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from order_engine.application.errors import OrderEngineError, InternalError
from order_engine.core.logging_config import get_logger

logger = get_logger(__name__)


def _field_errors(exc: RequestValidationError) -> dict:
    errors = {}
    for error in exc.errors():
        # Drop the "body"/"query"/"path" location prefix
        loc = [str(part) for part in error.get("loc", ())[1:]] or ["request"]
        errors[".".join(loc)] = error.get("msg", "Invalid value.")
    return errors


async def order_engine_error_handler(request: Request, exc: OrderEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    body = {"detail": "Validation failed.", "code": "validation_failed", "errors": _field_errors(exc), "retryable": False}
    return JSONResponse(status_code=422, content=jsonable_encoder(body))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content=InternalError().to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrderEngineError, order_engine_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
