"""Filesystem storage for uploaded file chunks."""
import io
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional
from uuid import UUID

from app.config import get_settings
from app.exceptions import CorruptedFile, StorageError

logger = logging.getLogger(__name__)

READ_BLOCK_SIZE = 64 * 1024


class ChunkStream(io.RawIOBase):
    """Read-only stream over a sequence of chunk files, in order."""

    def __init__(self, paths: List[Path]):
        super().__init__()
        self._paths = list(paths)
        self._position = 0
        self._current = None

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while True:
            if self._current is None:
                if self._position >= len(self._paths):
                    return 0
                path = self._paths[self._position]
                try:
                    self._current = open(path, "rb")
                except FileNotFoundError as e:
                    raise CorruptedFile(f"Chunk file missing: {path.name}") from e

            read = self._current.readinto(buffer)
            if read:
                return read

            self._current.close()
            self._current = None
            self._position += 1

    def close(self) -> None:
        if self._current is not None:
            self._current.close()
            self._current = None
        super().close()


class ChunkStore:
    """Persists raw chunk bytes under one directory per upload job."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or get_settings().upload_dir)

    def job_dir(self, job_id: UUID) -> Path:
        return self.base_dir / str(job_id)

    def chunk_path(self, job_id: UUID, chunk_index: int) -> Path:
        return self.job_dir(job_id) / f"{chunk_index:06d}.part"

    def write_chunk(self, job_id: UUID, chunk_index: int, data: bytes) -> str:
        """
        Write a chunk atomically and return its storage path.

        Args:
            job_id: Upload job ID
            chunk_index: 0-based chunk index
            data: Raw chunk bytes

        Returns:
            Path the chunk was stored at
        """
        path = self.chunk_path(job_id, chunk_index)
        tmp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"❌ Failed to store chunk {chunk_index} for job {job_id}: {e}")
            raise StorageError(f"Failed to store chunk {chunk_index}: {e}") from e

        logger.debug(f"💾 Stored chunk {chunk_index} for job {job_id} ({len(data)} bytes)")
        return str(path)

    def open_binary(self, job_id: UUID, total_chunks: int) -> io.BufferedReader:
        """Open the reassembled file as one buffered byte stream."""
        paths = [self.chunk_path(job_id, index) for index in range(total_chunks)]
        return io.BufferedReader(ChunkStream(paths), buffer_size=READ_BLOCK_SIZE)

    def open_text(self, job_id: UUID, total_chunks: int, encoding: str) -> io.TextIOWrapper:
        """
        Open the reassembled file as text for the CSV reader.

        newline="" leaves line endings to the csv module so quoted
        fields may span lines and chunk boundaries.
        """
        return io.TextIOWrapper(
            self.open_binary(job_id, total_chunks), encoding=encoding, newline=""
        )

    def delete_job(self, job_id: UUID) -> None:
        """Remove every stored chunk of a job."""
        shutil.rmtree(self.job_dir(job_id), ignore_errors=True)

    def is_available(self) -> bool:
        """Storage health check: base directory exists (or can be created) and is writable."""
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(self.base_dir, os.W_OK)
