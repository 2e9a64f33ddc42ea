"""File storage on the local filesystem: finalized files and in-flight chunks."""
import os
import shutil
import uuid
import aiofiles
from pathlib import Path
from portal_uploads.config import settings


class FileStorageService:
    """Reads and writes upload bytes under a base directory.

    Layout:
        <base>/files/<uuid><ext>          finalized uploads
        <base>/chunks/<upload_id>/<index> chunks of an in-progress session
    """

    def __init__(self, base_path: str | Path | None = None):
        self.base_path = Path(base_path or settings.FILE_STORAGE_PATH)

    @property
    def files_dir(self) -> Path:
        path = self.base_path / "files"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def chunk_dir(self, upload_id: str) -> Path:
        return self.base_path / "chunks" / upload_id

    async def save(self, file_bytes: bytes, original_name: str) -> str:
        """Save file bytes. Returns the storage path."""
        file_path = self.files_dir / f"{uuid.uuid4()}{Path(original_name).suffix}"
        async with aiofiles.open(file_path, "wb") as f:
            await f.write(file_bytes)
        return str(file_path)

    async def save_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> int:
        """Write one chunk, overwriting any earlier copy of the same index."""
        directory = self.chunk_dir(upload_id)
        directory.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(directory / str(chunk_index), "wb") as f:
            await f.write(data)
        return len(data)

    async def assemble(self, upload_id: str, total_chunks: int, original_name: str) -> tuple[str, int]:
        """Concatenate chunks 0..total_chunks-1 into a finalized file.

        Returns (storage_path, bytes_written). Chunks are streamed one at a
        time so the whole file is never held in memory.
        """
        directory = self.chunk_dir(upload_id)
        file_path = self.files_dir / f"{uuid.uuid4()}{Path(original_name).suffix}"
        written = 0
        async with aiofiles.open(file_path, "wb") as out:
            for index in range(total_chunks):
                async with aiofiles.open(directory / str(index), "rb") as part:
                    data = await part.read()
                await out.write(data)
                written += len(data)
        return str(file_path), written

    def delete_chunks(self, upload_id: str) -> None:
        """Remove the chunk directory of a session."""
        shutil.rmtree(self.chunk_dir(upload_id), ignore_errors=True)

    async def read(self, storage_path: str) -> bytes:
        """Read file bytes from storage path."""
        async with aiofiles.open(storage_path, "rb") as f:
            return await f.read()

    async def delete(self, storage_path: str) -> None:
        """Delete file from storage."""
        path = Path(storage_path)
        if path.exists():
            os.remove(path)


file_storage = FileStorageService()
