from __future__ import annotations

"""
FastAPI application for image-similarity search.

The app owns the process-wide ConfigProvider and TelemetrySink and wires them
into one ImageSearchService at startup. Endpoints are sync: the service
blocks on its model calls.
"""

import argparse
import uuid
from typing import Any, Dict, List, Optional

import pandas as pd
import uvicorn
from fastapi import Body, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ValidationError

from .catalog_build import CANONICAL_COLUMNS, load_catalog_snapshot
from .config import (
    ALLOWED_IMAGE_MIME_TYPES,
    API_HOST,
    API_PORT,
    CATALOG_SNAPSHOT_PATH,
    CORS_ORIGIN,
    MAX_API_KEY_CHARS,
    MAX_PROMPT_CHARS,
    MAX_UPLOAD_BYTES,
    AdminConfig,
)
from .config_provider import ConfigProvider
from .errors import ProviderError
from .rerank import GeminiReranker
from .retrieval import CatalogStore
from .schemas import Feedback, SearchResponse
from .scoring import HeuristicScorer
from .service import ImageSearchService
from .telemetry import TelemetrySink
from .vision import GeminiSignalExtractor


class HealthResponse(BaseModel):
    status: str


class FeedbackRequest(BaseModel):
    feedback: Feedback


class ApiError(Exception):
    """Request validation failure reported in the common error envelope."""

    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


def _error_body(code: str, message: str, request_id: Optional[str]) -> Dict[str, Any]:
    return {"error": {"code": code, "message": message}, "meta": {"request_id": request_id}}


# -----------------------
# FastAPI app + startup
# -----------------------

app = FastAPI(title="Image Search API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[CORS_ORIGIN],
    allow_methods=["*"],
    allow_headers=["*"],
)

config_provider = ConfigProvider()
telemetry = TelemetrySink()
_service: Optional[ImageSearchService] = None


def build_service(catalog_df: pd.DataFrame) -> ImageSearchService:
    return ImageSearchService(
        signal_extractor=GeminiSignalExtractor(),
        candidate_store=CatalogStore(catalog_df),
        reranker=GeminiReranker(),
        scorer=HeuristicScorer(),
        config_provider=config_provider,
        telemetry=telemetry,
    )


def _load_catalog() -> pd.DataFrame:
    try:
        return load_catalog_snapshot()
    except FileNotFoundError:
        logger.warning(
            "Catalog snapshot not found at {}; serving an empty catalog. "
            "Run `python -m image_search.catalog_build` to build it.",
            CATALOG_SNAPSHOT_PATH,
        )
        return pd.DataFrame(columns=CANONICAL_COLUMNS)


@app.on_event("startup")
def startup_event() -> None:
    global _service
    logger.info("Starting app warmup...")
    _service = build_service(_load_catalog())
    logger.info("Warmup complete.")


def get_service() -> ImageSearchService:
    global _service
    if _service is None:
        _service = build_service(_load_catalog())
    return _service


# -----------------------
# Error handlers
# -----------------------

@app.exception_handler(ProviderError)
def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.warning("[{}] {} -> HTTP {}", request_id, exc.code.value, exc.http_status)
    return JSONResponse(
        status_code=exc.http_status,
        content=_error_body(exc.code.value, exc.message, request_id),
    )


@app.exception_handler(ApiError)
def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.code, exc.message, request_id),
    )


# -----------------------
# Routes
# -----------------------

@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy")


@app.post("/api/search/image", response_model=SearchResponse)
def search_image(
    request: Request,
    image: Optional[UploadFile] = File(default=None),
    prompt: Optional[str] = Form(default=None),
    x_ai_api_key: Optional[str] = Header(default=None),
    x_request_id: Optional[str] = Header(default=None),
) -> SearchResponse:
    request_id = (x_request_id or "").strip() or str(uuid.uuid4())
    request.state.request_id = request_id

    api_key = (x_ai_api_key or "").strip()
    if not api_key:
        raise ApiError(400, "VALIDATION_HEADERS", "AI API Key is required (x-ai-api-key header)")
    if len(api_key) > MAX_API_KEY_CHARS:
        raise ApiError(400, "VALIDATION_HEADERS", "API Key too long")

    if image is None:
        raise ApiError(400, "VALIDATION_IMAGE_MISSING", "Multipart field 'image' is required")
    if image.content_type not in ALLOWED_IMAGE_MIME_TYPES:
        raise ApiError(
            400,
            "VALIDATION_IMAGE_FORMAT",
            f"Invalid file type: {image.content_type}. Allowed types: {', '.join(ALLOWED_IMAGE_MIME_TYPES)}",
        )

    # read one byte past the limit to detect oversize uploads
    image_bytes = image.file.read(MAX_UPLOAD_BYTES + 1)
    if len(image_bytes) > MAX_UPLOAD_BYTES:
        raise ApiError(413, "VALIDATION_IMAGE_SIZE", f"Image exceeds {MAX_UPLOAD_BYTES} bytes")
    if not image_bytes:
        raise ApiError(400, "VALIDATION_IMAGE_MISSING", "Uploaded image is empty")

    prompt = (prompt or "").strip() or None
    if prompt is not None and len(prompt) > MAX_PROMPT_CHARS:
        raise ApiError(400, "VALIDATION_PROMPT", f"Prompt exceeds {MAX_PROMPT_CHARS} characters")

    logger.info("[{}] Image search: {} bytes ({}), prompt={}", request_id, len(image_bytes), image.content_type, bool(prompt))
    return get_service().search_by_image(
        image_bytes=image_bytes,
        mime_type=image.content_type,
        api_key=api_key,
        request_id=request_id,
        prompt=prompt,
    )


@app.post("/api/feedback/{request_id}")
def submit_feedback(request_id: str, req: FeedbackRequest) -> Dict[str, bool]:
    if not telemetry.add_feedback(request_id, req.feedback):
        raise HTTPException(status_code=404, detail="Request ID not found in recent telemetry")
    return {"success": True}


@app.get("/api/admin/config", response_model=AdminConfig)
def get_admin_config() -> AdminConfig:
    return config_provider.get_config()


@app.put("/api/admin/config", response_model=AdminConfig)
def update_admin_config(partial: Dict[str, Any] = Body(...)) -> AdminConfig:
    try:
        return config_provider.update_config(partial)
    except ValidationError as e:
        detail = [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in e.errors()]
        raise HTTPException(status_code=422, detail=detail)


@app.post("/api/admin/config/reset", response_model=AdminConfig)
def reset_admin_config() -> AdminConfig:
    return config_provider.reset_to_defaults()


@app.get("/api/admin/telemetry")
def get_telemetry() -> Dict[str, Any]:
    events = telemetry.get_events()
    return {"events": [e.model_dump(mode="json", by_alias=True) for e in events]}


# ---------------------------
# Entry point
# ---------------------------

def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Serve the image search API.")
    ap.add_argument("--host", default=API_HOST)
    ap.add_argument("--port", type=int, default=API_PORT)
    ap.add_argument("--reload", action="store_true", help="Restart on code changes (development only).")
    args = ap.parse_args(argv)

    logger.info("Serving image search API on {}:{}", args.host, args.port)
    uvicorn.run("image_search.api:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
