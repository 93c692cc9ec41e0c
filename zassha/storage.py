import json
import logging
import os
import shutil
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterator, Optional
from uuid import uuid4

from zassha.config import settings
from zassha.errors import InvalidUpload, SessionNotFound, UploadConflict, UploadIncomplete

logger = logging.getLogger(__name__)
SANITIZE_ALLOWED = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_")

MANIFEST_NAME = "manifest.json"
PART_NAME = "file.part"
DEFAULT_EXTENSION = ".mp4"


def sanitize_token(value: str) -> str:
    """
    Keep a small set of characters so a client-supplied upload id can never escape the session root.
    """
    return "".join(ch for ch in (value or "") if ch in SANITIZE_ALLOWED)


def final_name_for(file_name: Optional[str]) -> str:
    base = (file_name or "").rsplit("/", 1)[-1].rsplit("\\", 1)[-1]
    _, ext = os.path.splitext(base)
    return f"final{ext or DEFAULT_EXTENSION}"


class SessionStore(ABC):
    """
    Storage primitives for upload sessions. Implementations raise FileNotFoundError for a missing
    session and may raise OSError/ValueError for unreadable state; ChunkStore owns the protocol rules.
    """

    @abstractmethod
    def create(self, session_id: str, manifest: dict) -> None: ...

    @abstractmethod
    def read_manifest(self, session_id: str) -> dict: ...

    @abstractmethod
    def write_manifest(self, session_id: str, manifest: dict) -> None: ...

    @abstractmethod
    def append(self, session_id: str, data: bytes) -> None: ...

    @abstractmethod
    def promote(self, session_id: str, final_name: str) -> str:
        """Turn the partial data into the finalized object and return its location."""

    @abstractmethod
    def locate(self, session_id: str, final_name: str) -> Optional[Path]:
        """Local filesystem path of a finalized upload, or None if there is none."""

    @abstractmethod
    def list_sessions(self) -> list[str]: ...

    @abstractmethod
    def delete(self, session_id: str) -> None: ...


class FileSessionStore(SessionStore):
    """One directory per session holding manifest.json, file.part and, once completed, final.<ext>."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _dir(self, session_id: str) -> Path:
        safe = sanitize_token(session_id)
        if not safe:
            raise FileNotFoundError(session_id)
        return self.root / safe

    def create(self, session_id: str, manifest: dict) -> None:
        directory = self._dir(session_id)
        directory.mkdir(parents=True, exist_ok=False)
        self.write_manifest(session_id, manifest)

    def read_manifest(self, session_id: str) -> dict:
        parsed = json.loads((self._dir(session_id) / MANIFEST_NAME).read_text(encoding="utf-8"))
        if not isinstance(parsed, dict):
            raise ValueError(f"manifest for {session_id} is not an object")
        return parsed

    def write_manifest(self, session_id: str, manifest: dict) -> None:
        directory = self._dir(session_id)
        if not directory.is_dir():
            raise FileNotFoundError(session_id)
        tmp_path = directory / f"{MANIFEST_NAME}.tmp"
        tmp_path.write_text(json.dumps(manifest), encoding="utf-8")
        os.replace(tmp_path, directory / MANIFEST_NAME)

    def append(self, session_id: str, data: bytes) -> None:
        directory = self._dir(session_id)
        if not directory.is_dir():
            raise FileNotFoundError(session_id)
        with open(directory / PART_NAME, "ab") as file_obj:
            file_obj.write(data)

    def promote(self, session_id: str, final_name: str) -> str:
        directory = self._dir(session_id)
        part_path = directory / PART_NAME
        final_path = directory / final_name
        # A finalized upload is never replaced.
        if final_path.exists():
            return str(final_path)
        if not part_path.exists():
            raise FileNotFoundError(part_path)
        try:
            os.rename(part_path, final_path)
        except OSError:
            # Cross-device or locked target: copy first, only then drop the source.
            logger.warning("Atomic rename failed for session %s, falling back to copy", session_id)
            shutil.copyfile(part_path, final_path)
            part_path.unlink(missing_ok=True)
        return str(final_path)

    def locate(self, session_id: str, final_name: str) -> Optional[Path]:
        try:
            path = self._dir(session_id) / final_name
        except FileNotFoundError:
            return None
        return path if path.is_file() else None

    def list_sessions(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(entry.name for entry in self.root.iterdir() if entry.is_dir())

    def delete(self, session_id: str) -> None:
        shutil.rmtree(self._dir(session_id), ignore_errors=True)


class MemorySessionStore(SessionStore):
    """Keeps sessions in process memory. Finalized uploads have no local path."""

    def __init__(self):
        self.manifests: dict[str, dict] = {}
        self.parts: dict[str, bytearray] = {}
        self.finals: dict[str, bytes] = {}

    def _require(self, session_id: str) -> None:
        if session_id not in self.manifests:
            raise FileNotFoundError(session_id)

    def create(self, session_id: str, manifest: dict) -> None:
        if session_id in self.manifests:
            raise FileExistsError(session_id)
        self.manifests[session_id] = dict(manifest)
        self.parts[session_id] = bytearray()

    def read_manifest(self, session_id: str) -> dict:
        self._require(session_id)
        return dict(self.manifests[session_id])

    def write_manifest(self, session_id: str, manifest: dict) -> None:
        self._require(session_id)
        self.manifests[session_id] = dict(manifest)

    def append(self, session_id: str, data: bytes) -> None:
        self._require(session_id)
        self.parts[session_id].extend(data)

    def promote(self, session_id: str, final_name: str) -> str:
        self._require(session_id)
        if session_id in self.parts and session_id not in self.finals:
            self.finals[session_id] = bytes(self.parts.pop(session_id))
        return f"memory://{session_id}/{final_name}"

    def locate(self, session_id: str, final_name: str) -> Optional[Path]:
        return None

    def list_sessions(self) -> list[str]:
        return sorted(self.manifests)

    def delete(self, session_id: str) -> None:
        self.manifests.pop(session_id, None)
        self.parts.pop(session_id, None)
        self.finals.pop(session_id, None)


@dataclass
class CompletedUpload:
    upload_id: str
    file_name: str
    location: str


class ChunkStore:
    """
    Resumable upload protocol over a SessionStore.

    Chunks must arrive strictly in order: an append is accepted only when its index equals the
    manifest's nextIndex. Anything else, including a resend of an accepted chunk, is a conflict that
    carries the true expected index so the caller can resynchronize.
    """

    def __init__(self, store: SessionStore, clock=time.time):
        self.store = store
        self.clock = clock
        self._lock = threading.Lock()

    def _read(self, upload_id: str) -> dict:
        try:
            manifest = self.store.read_manifest(upload_id)
            # Validate the fields the protocol depends on.
            int(manifest["nextIndex"]), int(manifest["chunkSize"]), int(manifest["size"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Upload session %s is unusable: %s", upload_id, exc)
            raise SessionNotFound(upload_id) from exc
        return manifest

    def _write(self, upload_id: str, manifest: dict) -> None:
        try:
            self.store.write_manifest(upload_id, manifest)
        except (OSError, ValueError) as exc:
            logger.warning("Could not persist manifest for %s: %s", upload_id, exc)
            raise SessionNotFound(upload_id) from exc

    def init(self, file_name: Optional[str], size: int, chunk_size: Optional[int] = None) -> dict:
        if size is None or size <= 0:
            raise InvalidUpload("invalid size")
        chunk_size = chunk_size if chunk_size and chunk_size > 0 else settings.CHUNK_SIZE_BYTES
        upload_id = uuid4().hex
        manifest = {
            "uploadId": upload_id,
            "fileName": file_name or f"video{DEFAULT_EXTENSION}",
            "size": int(size),
            "chunkSize": int(chunk_size),
            "nextIndex": 0,
            "receivedBytes": 0,
            "createdAt": self.clock(),
        }
        with self._lock:
            self.store.create(upload_id, manifest)
        logger.info("Created upload session %s (%s bytes in %s-byte chunks)", upload_id, size, chunk_size)
        return manifest

    def append(self, upload_id: str, index: int, data: bytes) -> int:
        """Append one chunk and return the new expected index."""
        with self._lock:
            manifest = self._read(upload_id)
            expected = int(manifest["nextIndex"])
            if manifest.get("completedAt"):
                raise InvalidUpload("upload already completed")
            if index != expected:
                raise UploadConflict(expected)
            if not data:
                raise InvalidUpload("empty chunk")
            if len(data) > int(manifest["chunkSize"]):
                raise InvalidUpload(f"chunk exceeds {manifest['chunkSize']} bytes")
            received = int(manifest.get("receivedBytes") or 0)
            if received + len(data) > int(manifest["size"]):
                raise InvalidUpload(f"chunk exceeds declared size of {manifest['size']} bytes")
            try:
                self.store.append(upload_id, data)
            except OSError as exc:
                logger.exception("Failed to append chunk %s to session %s", index, upload_id)
                raise SessionNotFound(upload_id) from exc
            manifest["nextIndex"] = expected + 1
            manifest["receivedBytes"] = received + len(data)
            self._write(upload_id, manifest)
            return expected + 1

    def complete(self, upload_id: str) -> CompletedUpload:
        with self._lock:
            manifest = self._read(upload_id)
            size = int(manifest["size"])
            received = int(manifest.get("receivedBytes") or 0)
            written = int(manifest["nextIndex"]) * int(manifest["chunkSize"])
            # Short non-final chunks leave nextIndex * chunkSize ahead of the bytes actually held.
            if written < size or received < size:
                raise UploadIncomplete(received, size)
            try:
                location = self.store.promote(upload_id, final_name_for(manifest.get("fileName")))
            except OSError as exc:
                logger.exception("Failed to finalize upload session %s", upload_id)
                raise SessionNotFound(upload_id) from exc
            manifest["completedAt"] = self.clock()
            self._write(upload_id, manifest)
        logger.info("Completed upload session %s -> %s", upload_id, location)
        return CompletedUpload(upload_id=upload_id, file_name=manifest["fileName"], location=location)

    def final_path(self, upload_id: str) -> Optional[Path]:
        """Local path of a completed upload, or None when the session is missing or unfinished."""
        try:
            manifest = self._read(upload_id)
        except SessionNotFound:
            return None
        return self.store.locate(upload_id, final_name_for(manifest.get("fileName")))

    def iter_expired(self, max_age_seconds: float) -> Iterator[str]:
        now = self.clock()
        for upload_id in self.store.list_sessions():
            try:
                created_at = float(self.store.read_manifest(upload_id).get("createdAt") or 0)
            except (OSError, ValueError, TypeError):
                yield upload_id
                continue
            if now - created_at > max_age_seconds:
                yield upload_id

    def reap_expired(self, max_age_seconds: float) -> list[str]:
        """Delete sessions older than max_age_seconds, plus sessions whose manifest is unreadable."""
        if max_age_seconds <= 0:
            return []
        with self._lock:
            reaped = list(self.iter_expired(max_age_seconds))
            for upload_id in reaped:
                self.store.delete(upload_id)
        if reaped:
            logger.info("Reaped %s expired upload session(s)", len(reaped))
        return reaped


@lru_cache(maxsize=1)
def get_chunk_store() -> ChunkStore:
    return ChunkStore(FileSessionStore(settings.UPLOAD_DIR))
