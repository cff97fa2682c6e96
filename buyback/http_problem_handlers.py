# buyback/http_problem_handlers.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from buyback.api.problem import Problem, make_problem
from buyback.core.errors import EngineError

logger = logging.getLogger("buyback.http")


def _new_trace_id() -> str:
    return f"t_{uuid.uuid4().hex[:12]}"


def _request_context(req: Request) -> Dict[str, Any]:
    return {"path": getattr(req.url, "path", ""), "method": req.method}


def _problem_from_http_exc(req: Request, exc: HTTPException) -> Dict[str, Any]:
    """
    HTTPException.detail → Problem:
    - already a Problem dict: fill http_status / trace_id / context
    - str (or anything else): http_error with the text as message
    """
    status_code = int(exc.status_code)
    trace_id = _new_trace_id()
    ctx = _request_context(req)

    d = exc.detail
    if isinstance(d, dict) and "error_code" in d and "message" in d:
        out = dict(d)
        out.setdefault("http_status", status_code)
        out.setdefault("trace_id", trace_id)
        merged = dict(ctx)
        if isinstance(out.get("context"), dict):
            merged.update(out["context"])
        out["context"] = merged
        return out

    msg = str(d) if d is not None else "Request rejected"
    return make_problem(
        status_code=status_code,
        error_code="http_error",
        message=msg,
        context=ctx,
        details=[{"type": "state", "reason": msg}],
        trace_id=trace_id,
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(EngineError)
    async def _engine_exc(req: Request, exc: EngineError):
        status_code = int(exc.http_status)
        trace_id = _new_trace_id()
        if status_code >= 500:
            logger.warning("ENGINE_ERROR[%s] %s: %s", trace_id, exc.error_code, exc.message)
        problem = Problem.from_error(exc, context=_request_context(req), trace_id=trace_id)
        return JSONResponse(status_code=status_code, content=problem.to_dict())

    @app.exception_handler(Exception)
    async def _unhandled_exc(req: Request, exc: Exception):
        trace_id = _new_trace_id()
        logger.exception("UNHANDLED_EXC[%s]: %s", trace_id, exc)
        content = make_problem(
            status_code=500,
            error_code="internal_error",
            message="Internal error, please retry later",
            context=_request_context(req),
            trace_id=trace_id,
        )
        return JSONResponse(status_code=500, content=content)

    @app.exception_handler(RequestValidationError)
    async def _validation_exc(req: Request, exc: RequestValidationError):
        details: List[Dict[str, Any]] = []
        for i, e in enumerate(exc.errors()):
            if not isinstance(e, dict):
                continue
            details.append(
                {
                    "type": "validation",
                    "path": f"validation[{i}]",
                    "reason": str(e.get("msg") or e.get("type") or "invalid"),
                }
            )
        content = make_problem(
            status_code=422,
            error_code="request_validation_error",
            message="Invalid request parameters",
            context=_request_context(req),
            details=details,
            trace_id=_new_trace_id(),
        )
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(HTTPException)
    async def _http_exc(req: Request, exc: HTTPException):
        content = _problem_from_http_exc(req, exc)
        return JSONResponse(status_code=int(exc.status_code), content=content)
