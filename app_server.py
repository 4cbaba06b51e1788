import json
import logging
import traceback
from typing import Any
from urllib.parse import parse_qsl

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from form_errors import ConfigurationError, FormFillError, MappingParseError
from form_overlay import describe, prepare_job, render
from form_settings import Settings, configure_logging, load_settings_from_dotenv
from form_values import record_from_payload, resolve

logger = logging.getLogger(__name__)

GENERATE_PATH = "/api/generate-top"
BASELINE_PATH = "/baseline.pdf"

_FORM_TYPES = frozenset({"application/x-www-form-urlencoded", "multipart/form-data"})
_TRUTHY = frozenset({"1", "true", "yes", "on"})


async def read_payload(request: Request) -> dict[str, Any]:
    """Request fields from the query string (GET) or a JSON, form or ``data=`` body."""
    if request.method == "GET":
        return dict(request.query_params)

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type in _FORM_TYPES:
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    raw = (await request.body()).decode("utf-8", errors="replace").strip()
    if not raw:
        return {}
    if raw.startswith("data="):
        return dict(parse_qsl(raw, keep_blank_values=True))
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    return payload


def is_debug(request: Request, payload: dict[str, Any]) -> bool:
    flag = payload.get("debug", request.query_params.get("debug"))
    if isinstance(flag, bool):
        return flag
    return str(flag or "").strip().lower() in _TRUTHY


def error_response(status_code: int, message: str, exc: Exception, settings: Settings) -> JSONResponse:
    content: dict[str, Any] = {"message": message, "detail": str(exc)}
    if settings.expose_traceback:
        content["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=status_code, content=content, headers={"Cache-Control": "no-store"})


def create_app(settings: Settings) -> FastAPI:
    app = FastAPI(title="TOP Form Generator")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    def generate(data: dict[str, Any], debug: bool) -> Any:
        job = prepare_job(settings)
        resolve(data)
        if debug:
            return describe(job, data)
        return render(job.template_bytes, job.mapping, data, job.font_path)

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.api_route(GENERATE_PATH, methods=["GET", "POST", "OPTIONS"], response_model=None)
    async def generate_top(request: Request) -> Response:
        if request.method == "OPTIONS":
            return Response(
                status_code=200,
                headers={
                    "Access-Control-Allow-Origin": "*",
                    "Access-Control-Allow-Headers": "Content-Type",
                    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
                },
            )

        payload = await read_payload(request)
        if request.method == "GET" and not payload:
            return RedirectResponse(BASELINE_PATH, status_code=307)

        debug = is_debug(request, payload)
        data = record_from_payload(payload)
        try:
            result = await run_in_threadpool(generate, data, debug)
        except MappingParseError as exc:
            logger.error("Mapping rejected: %s", exc)
            return error_response(500, "Mapping could not be parsed.", exc, settings)
        except ConfigurationError as exc:
            logger.error("Configuration error: %s", exc)
            return error_response(400, str(exc), exc, settings)
        except FormFillError as exc:
            logger.exception("Render failed")
            return error_response(500, "Render failed.", exc, settings)
        except Exception as exc:
            logger.exception("generate_top error")
            return error_response(500, f"Error: {exc}", exc, settings)

        if debug:
            return JSONResponse(content=result, headers={"Cache-Control": "no-store"})

        logger.info("Generated %s (%d bytes)", settings.output_filename, len(result))
        return Response(
            content=result,
            media_type="application/pdf",
            headers={
                "Content-Disposition": f'inline; filename="{settings.output_filename}"',
                "Cache-Control": "no-store",
            },
        )

    @app.get(BASELINE_PATH, response_model=None)
    def baseline() -> Response:
        """The bare template, served for empty GET requests."""
        try:
            job = prepare_job(settings)
        except MappingParseError as exc:
            logger.error("Mapping rejected: %s", exc)
            return error_response(500, "Mapping could not be parsed.", exc, settings)
        except ConfigurationError as exc:
            return error_response(404, str(exc), exc, settings)
        return Response(
            content=job.template_bytes,
            media_type="application/pdf",
            headers={"Content-Disposition": f'inline; filename="{job.template_path.name}"'},
        )

    return app


settings = load_settings_from_dotenv()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
