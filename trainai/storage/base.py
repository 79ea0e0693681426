from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class StoredObject:
    name: str
    size: int


class ObjectStore(ABC):
    """
    Flat key/value object store addressed by ``/``-separated paths.

    Writes are atomic per object. Backends raise ``StorageError`` for any I/O
    failure.
    """

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str, overwrite: bool = True) -> str:
        """Store ``data`` at ``path`` and return the stored path."""

    @abstractmethod
    async def list(self, prefix: str, search: str = "") -> List[StoredObject]:
        """List objects directly under ``prefix`` whose name starts with ``search``."""

    @abstractmethod
    async def get(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def delete(self, paths: List[str]) -> None:
        ...

    @abstractmethod
    def public_url(self, path: str) -> str:
        ...
