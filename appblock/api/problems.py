# file: appblock/api/problems.py
"""
HTTP error mapping for the appblock front door.

- Responses in Problem Details format (RFC 7807): application/problem+json.
- Engine errors (AppBlockError) carry a stable ErrorCode; the status code is
  chosen here and nowhere else.
- Handlers for AppBlockError, RequestValidationError, HTTPException and
  unexpected Exception (500).
- Request correlation: X-Correlation-ID (from the request or a fresh uuid4).
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette import status
from starlette.exceptions import HTTPException as StarletteHTTPException

from appblock.errors import AppBlockError, ErrorCode, RemoteErrorKind, RemoteRejected

__all__ = ["FieldError", "Problem", "status_for", "register_exception_handlers"]

logger = logging.getLogger("appblock.api.problems")

PROBLEM_CONTENT_TYPE = "application/problem+json"
CORRELATION_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"

_STATUS_BY_CODE: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_AUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.DUPLICATE_ID: status.HTTP_409_CONFLICT,
    ErrorCode.REMOTE_REJECTED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.PERSISTENCE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_TITLES: Dict[int, str] = {
    400: "Bad Request",
    401: "Unauthorized",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
    502: "Bad Gateway",
}


class FieldError(BaseModel):
    loc: List[Union[str, int]]
    msg: str
    type: Optional[str] = None


class Problem(BaseModel):
    type: str
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None

    # extension members
    code: str
    correlation_id: str
    fields: Optional[List[FieldError]] = None
    upstream_status: Optional[int] = None


def status_for(exc: AppBlockError) -> int:
    if isinstance(exc, RemoteRejected) and exc.error.kind == RemoteErrorKind.CLIENT_ERROR:
        # the controller refused what we sent; same category as a bad request
        return status.HTTP_400_BAD_REQUEST
    return _STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def _get_correlation_id(request: Optional[Request]) -> str:
    if request is not None:
        cid = request.headers.get(CORRELATION_HEADER) or request.headers.get(REQUEST_ID_HEADER)
        if cid:
            return cid
    return str(uuid.uuid4())


def _problem_json_response(problem: Problem, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    hdrs = {CORRELATION_HEADER: problem.correlation_id}
    if headers:
        hdrs.update(headers)
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
        media_type=PROBLEM_CONTENT_TYPE,
        headers=hdrs,
    )


def _problem(
    request: Request,
    *,
    status_code: int,
    code: str,
    detail: Optional[str] = None,
    fields: Optional[List[FieldError]] = None,
    upstream_status: Optional[int] = None,
) -> Problem:
    return Problem(
        type=f"tag:appblock:{code}",
        title=_TITLES.get(status_code, "Error"),
        status=status_code,
        detail=detail,
        instance=str(request.url.path),
        code=code,
        correlation_id=_get_correlation_id(request),
        fields=fields,
        upstream_status=upstream_status,
    )


# Exception handlers

async def _handle_app_error(request: Request, exc: AppBlockError) -> JSONResponse:
    status_code = status_for(exc)
    upstream = exc.error.status if isinstance(exc, RemoteRejected) else None
    problem = _problem(request, status_code=status_code, code=exc.code.value, detail=exc.detail, upstream_status=upstream)
    level = logging.ERROR if status_code >= 500 and status_code != 502 else logging.WARNING
    logger.log(
        level,
        "app_error",
        extra={
            "code": problem.code,
            "status": problem.status,
            "correlation_id": problem.correlation_id,
            "path": str(request.url.path),
            "method": request.method,
        },
    )
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return _problem_json_response(problem, headers=headers)


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [
        FieldError(loc=list(e.get("loc", [])), msg=e.get("msg") or "Invalid value", type=e.get("type"))
        for e in exc.errors()
    ]
    problem = _problem(
        request,
        status_code=422,  # the Starlette name for 422 changed between releases
        code="schema_error",
        detail="request body does not match the expected schema",
        fields=fields,
    )
    logger.info(
        "validation_error",
        extra={"status": problem.status, "count": len(fields), "path": str(request.url.path), "method": request.method},
    )
    return _problem_json_response(problem)


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status_code = exc.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR
    problem = _problem(
        request,
        status_code=status_code,
        code="http_error",
        detail=str(exc.detail) if exc.detail else None,
    )
    return _problem_json_response(problem, headers=getattr(exc, "headers", None))


async def _handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
    problem = _problem(request, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, code="internal_error")
    logger.exception(
        "unhandled_exception",
        extra={"correlation_id": problem.correlation_id, "path": str(request.url.path), "method": request.method},
    )
    return _problem_json_response(problem)


def register_exception_handlers(app: Any) -> None:
    app.add_exception_handler(AppBlockError, _handle_app_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(Exception, _handle_unexpected_exception)
