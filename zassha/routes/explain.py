import logging
import shutil
import tempfile
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse

from zassha import gemini
from zassha.config import settings
from zassha.events import encode_event
from zassha.pipeline import AnalysisRequest, AnalysisRun, build_run
from zassha.prompts import LANGS, MODES, normalize_hint
from zassha.storage import ChunkStore, get_chunk_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/explain", tags=["explain"])

NDJSON_MEDIA_TYPE = "application/x-ndjson; charset=utf-8"
READ_CHUNK_BYTES = 1024 * 1024


def get_analysis_client():
    try:
        return gemini.get_model_client()
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


async def _persist_upload(file: UploadFile) -> tuple[Path, Path]:
    """Stream a direct upload to a run-owned temp directory; returns (file path, directory)."""
    Path(settings.WORK_DIR).mkdir(parents=True, exist_ok=True)
    owned_dir = Path(tempfile.mkdtemp(prefix="direct_", dir=settings.WORK_DIR))
    suffix = Path(file.filename or "").suffix or ".mp4"
    destination = owned_dir / f"source{suffix}"
    with destination.open("wb") as out:
        while True:
            chunk = await file.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            out.write(chunk)
    await file.close()
    return destination, owned_dir


async def _ndjson(run: AnalysisRun) -> AsyncIterator[bytes]:
    async for event in run.events():
        yield encode_event(event)


@router.post("/stream")
async def explain_stream(
    file: Optional[UploadFile] = File(None),
    uploadId: Optional[str] = Form(None),
    fileName: Optional[str] = Form(None),
    mode: str = Form("detail"),
    lang: str = Form("en"),
    hint: Optional[str] = Form(None),
    client=Depends(get_analysis_client),
    store: ChunkStore = Depends(get_chunk_store),
) -> StreamingResponse:
    if mode not in MODES:
        raise HTTPException(status_code=400, detail=f"mode must be one of {', '.join(MODES)}")
    if lang not in LANGS:
        raise HTTPException(status_code=400, detail=f"lang must be one of {', '.join(LANGS)}")
    if file is None and not uploadId:
        raise HTTPException(status_code=400, detail="file or uploadId is required")

    if uploadId:
        source_path = store.final_path(uploadId)
        if source_path is None:
            raise HTTPException(status_code=404, detail="upload not found or not completed")
        owned_dir = None
        display_name = fileName or source_path.name
    else:
        source_path, owned_dir = await _persist_upload(file)
        display_name = fileName or file.filename or source_path.name

    request = AnalysisRequest(
        source_path=source_path,
        file_name=display_name,
        mode=mode,
        lang=lang,
        hint=normalize_hint(hint),
        owned_dir=owned_dir,
    )
    logger.info("Starting %s/%s analysis of %s", mode, lang, display_name)
    cleanup = BackgroundTasks()
    if owned_dir is not None:
        cleanup.add_task(shutil.rmtree, owned_dir, ignore_errors=True)
    return StreamingResponse(
        _ndjson(build_run(request, client)),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache, no-transform"},
        background=cleanup,
    )
