"""Map safety errors and action results to JSON responses carrying the request id."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from platesafe.obs.logging import current_request_id
from platesafe.safety.domain.errors import ErrorKind, SafetyError
from platesafe.safety.service import ActionResult


def error_payload(kind: ErrorKind | str, detail: str | None) -> dict[str, object]:
    value = kind.value if isinstance(kind, ErrorKind) else kind
    return {"error": value, "detail": detail, "request_id": current_request_id()}


def result_error_response(result: ActionResult) -> JSONResponse:
    headers: dict[str, str] = {}
    if result.retry_after:
        headers["Retry-After"] = str(result.retry_after)
    kind = result.error or ErrorKind.VALIDATION
    return JSONResponse(status_code=result.status_code, content=error_payload(kind, result.message), headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SafetyError)
    async def safety_exc_handler(request: Request, exc: SafetyError):  # type: ignore[override]
        return result_error_response(ActionResult.failure(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        return JSONResponse(status_code=exc.status_code, content=error_payload("http_error", str(exc.detail)))

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        payload = error_payload(ErrorKind.VALIDATION, "validation_error")
        payload["errors"] = jsonable_errors(exc)
        return JSONResponse(status_code=422, content=payload)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, object]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": str(error.get("msg", "")), "type": str(error.get("type", ""))}
        for error in exc.errors()
    ]
