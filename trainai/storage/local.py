import asyncio
import logging
import uuid
from pathlib import Path
from typing import List

import aiofiles
import aiofiles.os

from trainai.errors import StorageError, ObjectExistsError
from trainai.storage.base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)


class LocalObjectStore(ObjectStore):
    """Object store backed by a directory, served publicly under ``public_base_url``."""

    def __init__(self, root: Path, public_base_url: str, max_concurrent_io: int = 16):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self._sem = asyncio.Semaphore(max_concurrent_io)

    def _resolve(self, path: str) -> Path:
        root = self.root.resolve()
        target = (root / path).resolve()
        if target == root or root not in target.parents:
            raise StorageError(f"Invalid object path: '{path}'")

        return target

    async def put(self, path: str, data: bytes, content_type: str, overwrite: bool = True) -> str:
        target = self._resolve(path)
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")

        async with self._sem:
            try:
                await aiofiles.os.makedirs(target.parent, exist_ok=True)

                async with aiofiles.open(tmp, "wb") as f:
                    await f.write(data)

                if overwrite:
                    await aiofiles.os.replace(tmp, target)
                else:
                    # link() refuses an existing target, so only one writer can create it
                    try:
                        await aiofiles.os.link(tmp, target)
                    except FileExistsError as e:
                        raise ObjectExistsError(f"Object already exists: '{path}'") from e

            except OSError as e:
                raise StorageError(f"Failed to write object '{path}'") from e
            finally:
                await self._discard(tmp)

        logger.debug("stored %s (%d bytes, %s)", path, len(data), content_type)
        return path

    @staticmethod
    async def _discard(path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("could not remove temporary file %s", path)

    async def list(self, prefix: str, search: str = "") -> List[StoredObject]:
        directory = self._resolve(prefix)

        def scan() -> List[StoredObject]:
            if not directory.is_dir():
                return []

            return [
                StoredObject(name=entry.name, size=entry.stat().st_size)
                for entry in directory.iterdir()
                if entry.is_file() and not entry.name.startswith(".") and entry.name.startswith(search)
            ]

        async with self._sem:
            try:
                return await asyncio.to_thread(scan)
            except OSError as e:
                raise StorageError(f"Failed to list objects under '{prefix}'") from e

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)

        async with self._sem:
            try:
                async with aiofiles.open(target, "rb") as f:
                    return await f.read()
            except FileNotFoundError as e:
                raise StorageError(f"Object not found: '{path}'") from e
            except OSError as e:
                raise StorageError(f"Failed to read object '{path}'") from e

    async def delete(self, paths: List[str]) -> None:
        targets = [self._resolve(p) for p in paths]

        async def remove(target: Path) -> None:
            async with self._sem:
                try:
                    await aiofiles.os.remove(target)
                except FileNotFoundError:
                    pass

        try:
            await asyncio.gather(*(remove(t) for t in targets))
        except OSError as e:
            raise StorageError("Failed to delete objects") from e

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path}"
