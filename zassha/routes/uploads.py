from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from zassha.config import settings
from zassha.schemas import (
    UploadAppendResponse,
    UploadCompleteResponse,
    UploadErrorResponse,
    UploadInitResponse,
)
from zassha.storage import ChunkStore, get_chunk_store

router = APIRouter(prefix="/uploads", tags=["uploads"])

ERROR_RESPONSES = {
    400: {"model": UploadErrorResponse},
    404: {"model": UploadErrorResponse},
    409: {"model": UploadErrorResponse},
}


@router.post("/init", response_model=UploadInitResponse, responses=ERROR_RESPONSES)
async def init_upload(
    size: int = Form(...),
    fileName: str = Form("video.mp4"),
    chunkSize: Optional[int] = Form(None),
    store: ChunkStore = Depends(get_chunk_store),
) -> UploadInitResponse:
    if settings.UPLOAD_SESSION_TTL_SEC > 0:
        store.reap_expired(settings.UPLOAD_SESSION_TTL_SEC)
    manifest = store.init(fileName, size, chunkSize)
    return UploadInitResponse(upload_id=manifest["uploadId"], chunk_size=manifest["chunkSize"])


@router.post("/append", response_model=UploadAppendResponse, responses=ERROR_RESPONSES)
async def append_chunk(
    uploadId: str = Form(...),
    index: int = Form(..., ge=0),
    blob: UploadFile = File(...),
    store: ChunkStore = Depends(get_chunk_store),
) -> UploadAppendResponse:
    data = await blob.read()
    await blob.close()
    next_index = store.append(uploadId, index, data)
    return UploadAppendResponse(next_index=next_index)


@router.post("/complete", response_model=UploadCompleteResponse, responses=ERROR_RESPONSES)
async def complete_upload(
    uploadId: str = Form(...),
    store: ChunkStore = Depends(get_chunk_store),
) -> UploadCompleteResponse:
    completed = store.complete(uploadId)
    return UploadCompleteResponse(upload_id=completed.upload_id, file_name=completed.file_name)
