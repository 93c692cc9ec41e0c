import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from zassha.config import settings
from zassha.errors import UploadError
from zassha.routes import explain
from zassha.routes import uploads
from zassha.schemas import HealthConfig, HealthResponse
from zassha.segmenter import ffmpeg_available
from zassha.storage import get_chunk_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.UPLOAD_SESSION_TTL_SEC > 0:
        try:
            get_chunk_store().reap_expired(settings.UPLOAD_SESSION_TTL_SEC)
        except OSError:
            logging.exception("Failed to reap expired upload sessions.")
    logging.info("Explain API started")
    yield


def create_app() -> FastAPI:
    logging.getLogger("zassha").setLevel(settings.LOG_LEVEL)
    app = FastAPI(
        title="Zassha Explain API",
        version="0.1.0",
        root_path=settings.API_ROOT_PATH or None,
        lifespan=lifespan,
    )

    allowed_origins = settings.MEDIA_CORS_ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.body())

    @app.get(f"{settings.API_PREFIX}/health", tags=["system"], response_model=HealthResponse)
    async def health() -> HealthResponse:
        has_ffmpeg = await run_in_threadpool(ffmpeg_available)
        return HealthResponse(
            has_gemini=bool(settings.GEMINI_API_KEY),
            has_ffmpeg=has_ffmpeg,
            config=HealthConfig(
                chunk_threshold_bytes=settings.CHUNK_THRESHOLD_BYTES,
                chunk_size_bytes=settings.CHUNK_SIZE_BYTES,
                segment_len_sec=settings.SEGMENT_LEN_SEC,
                upload_progress_max=settings.UPLOAD_PROGRESS_MAX,
            ),
        )

    app.include_router(uploads.router, prefix=settings.API_PREFIX)
    app.include_router(explain.router, prefix=settings.API_PREFIX)
    return app


app = create_app()
