from __future__ import annotations
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


def _error_body(detail) -> dict:
	# Handlers may raise with a ready-made body, e.g. {"isValid": False, "error": ..., "reason": ...}
	if isinstance(detail, dict):
		return detail
	return {"error": str(detail)}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
	return JSONResponse(status_code=exc.status_code, content=_error_body(exc.detail), headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
	errors = exc.errors()
	message = "Invalid input data"
	if errors:
		first = errors[0]
		location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
		if location:
			message = f"Invalid input data: {location}: {first.get('msg')}"
	return JSONResponse(status_code=400, content={"error": message})


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
	logger.exception("Unhandled error on %s %s", request.method, request.url.path)
	return JSONResponse(status_code=500, content={"error": "Internal server error"})


def install_error_handlers(app: FastAPI) -> None:
	app.add_exception_handler(StarletteHTTPException, http_exception_handler)
	app.add_exception_handler(RequestValidationError, validation_exception_handler)
	app.add_exception_handler(Exception, unhandled_exception_handler)
