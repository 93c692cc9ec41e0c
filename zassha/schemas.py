from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UploadInitResponse(CamelModel):
    ok: bool = True
    upload_id: str = Field(..., alias="uploadId", description="Opaque session token for append/complete.")
    chunk_size: int = Field(..., alias="chunkSize", description="Chunk size the server will enforce.")


class UploadAppendResponse(CamelModel):
    ok: bool = True
    next_index: int = Field(..., alias="nextIndex", description="Index the server expects next.")


class UploadCompleteResponse(CamelModel):
    ok: bool = True
    upload_id: str = Field(..., alias="uploadId")
    file_name: str = Field(..., alias="fileName")


class UploadErrorResponse(BaseModel):
    ok: bool = False
    code: str
    error: str
    expected: Optional[int] = Field(None, description="Server-side next index, only on conflicts.")


class HealthConfig(CamelModel):
    chunk_threshold_bytes: int = Field(..., alias="chunkThresholdBytes")
    chunk_size_bytes: int = Field(..., alias="chunkSizeBytes")
    segment_len_sec: int = Field(..., alias="segmentLenSec")
    upload_progress_max: int = Field(..., alias="uploadProgressMax")


class HealthResponse(CamelModel):
    status: str = "ok"
    ok: bool = True
    has_gemini: bool = Field(..., alias="hasGemini")
    has_ffmpeg: bool = Field(..., alias="hasFfmpeg")
    config: HealthConfig
