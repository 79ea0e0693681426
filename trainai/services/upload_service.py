import datetime
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import humanfriendly
import sqlalchemy as sa
from fastapi import Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from trainai.config import config
from trainai.db.models.upload_session import UploadSession, UploadStatus
from trainai.db.session import get_db
from trainai.errors import (
    NotFoundError,
    SessionConflictError,
    SessionExpiredError,
    SizeLimitError,
    StorageError,
    ValidationError,
)
from trainai.services.storage_service import get_object_store
from trainai.storage.base import ObjectStore
from trainai.utils.files import (
    FINAL_CONTENT_TYPE,
    chunk_object_name,
    chunk_prefix,
    final_object_name,
    missing_indexes,
    parse_chunk_index,
    safe_file_name,
)

logger = logging.getLogger(__name__)

CHUNK_ENDPOINT = "/upload/chunk"


def current_millis() -> int:
    return time.time_ns() // 1_000_000


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclass
class InitResult:
    session_id: str
    upload_path: str
    upload_url: str = CHUNK_ENDPOINT


@dataclass
class ChunkResult:
    chunk_index: int
    chunk_path: str


@dataclass
class FinalizeResult:
    url: str
    path: str
    file_size: int
    chunks_processed: int


@dataclass
class StoredUpload:
    url: str
    path: str


@dataclass
class SessionState:
    session: UploadSession
    chunks_received: List[int] = field(default_factory=list)
    missing_chunks: List[int] = field(default_factory=list)


class UploadService:
    """
    Chunked upload lifecycle: init, chunk, finalize.

    Session rows in ``upload_sessions`` hold ownership, expiry and the
    ``open -> finalizing -> finalized`` state. Chunk bytes live only in the
    object store under ``{owner_id}/{session_id}_chunk_{index:06d}``.
    """

    def __init__(
            self,
            db: AsyncSession,
            store: ObjectStore,
            max_file_size: int = config.MAX_FILE_SIZE,
            claim_timeout: datetime.timedelta = datetime.timedelta(minutes=config.FINALIZE_CLAIM_TIMEOUT_MIN)
    ):
        self.db = db
        self.store = store
        self.max_file_size = max_file_size
        self.claim_timeout = claim_timeout

    async def init_session(
            self,
            owner_id: str,
            file_name: str,
            file_size: int,
            file_type: str,
            upload_id: str
    ) -> InitResult:
        if file_size > self.max_file_size:
            raise SizeLimitError(
                f"File size exceeds maximum limit of {humanfriendly.format_size(self.max_file_size, binary=True)}"
            )

        session_id = f"session-{upload_id}-{current_millis()}"
        upload_path = f"{owner_id}/{session_id}"

        if await self.db.get(UploadSession, session_id) is not None:
            raise SessionConflictError(f"Upload session '{session_id}' already exists, retry with a new upload id")

        self.db.add(
            UploadSession(
                id=session_id,
                owner_id=owner_id,
                upload_path=upload_path,
                file_name=file_name,
                file_size=file_size,
                file_type=file_type,
                status=UploadStatus.OPEN.value,
            )
        )

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise SessionConflictError(f"Upload session '{session_id}' already exists, retry with a new upload id")

        logger.info("initialized upload session %s for %s (%d bytes)", session_id, file_name, file_size)
        return InitResult(session_id=session_id, upload_path=upload_path)

    async def receive_chunk(
            self,
            owner_id: str,
            session_id: str,
            chunk_index: int,
            data: bytes,
            content_type: Optional[str] = None
    ) -> ChunkResult:
        if chunk_index < 0:
            raise ValidationError("chunkIndex must be a non-negative integer")

        session = await self._load_session(owner_id, session_id)
        self._ensure_open(session)

        path = f"{owner_id}/{chunk_object_name(session_id, chunk_index)}"
        stored = await self.store.put(path, data, content_type or "application/octet-stream", overwrite=True)

        logger.debug("session %s: stored chunk %d (%d bytes)", session_id, chunk_index, len(data))
        return ChunkResult(chunk_index=chunk_index, chunk_path=stored)

    async def finalize(self, owner_id: str, session_id: str) -> FinalizeResult:
        session = await self._load_session(owner_id, session_id)

        if session.status == UploadStatus.FINALIZED:
            return self._finalized_result(session)

        if session.is_expired(utcnow()):
            raise SessionExpiredError("Upload session has expired")

        if not await self._claim(owner_id, session_id):
            session = await self._load_session(owner_id, session_id)
            if session.status == UploadStatus.FINALIZED:
                return self._finalized_result(session)

            raise SessionConflictError("Upload session is already being finalized")

        logger.info("finalizing upload session %s", session_id)

        finalized = False
        try:
            result, chunk_paths = await self._assemble(owner_id, session_id)
            await self._set_status(
                session_id,
                UploadStatus.FINALIZED,
                final_path=result.path,
                final_url=result.url,
                final_size=result.file_size,
                chunks_processed=result.chunks_processed,
            )
            finalized = True
        finally:
            # also runs on cancellation, a claim left in place blocks the session
            if not finalized:
                await self._release(session_id)

        try:
            await self.store.delete(chunk_paths)
        except StorageError as e:
            logger.warning("session %s: failed to delete %d chunk(s): %s", session_id, len(chunk_paths), e)

        logger.info(
            "finalized upload session %s: %d chunk(s), %d bytes",
            session_id, result.chunks_processed, result.file_size
        )
        return result

    async def upload_single(self, owner_id: str, file_name: str, data: bytes, content_type: Optional[str]) -> StoredUpload:
        if len(data) > self.max_file_size:
            raise SizeLimitError(f"File exceeds max file size: '{file_name}'")

        path = f"{owner_id}/{current_millis()}-{safe_file_name(file_name)}"
        stored = await self.store.put(path, data, content_type or "application/octet-stream", overwrite=False)

        logger.info("stored single upload %s (%d bytes)", stored, len(data))
        return StoredUpload(url=self.store.public_url(stored), path=stored)

    async def get_state(self, owner_id: str, session_id: str) -> SessionState:
        session = await self._load_session(owner_id, session_id)
        if session.status == UploadStatus.FINALIZED:
            return SessionState(session=session)

        indexes = sorted(index for index, _ in await self._list_chunks(owner_id, session_id))
        return SessionState(session=session, chunks_received=indexes, missing_chunks=missing_indexes(indexes))

    async def expire_sessions(self, now: Optional[datetime.datetime] = None, dry_run: bool = False) -> int:
        """Delete unfinished sessions past their expiry together with their chunk objects."""
        now = now or utcnow()

        sessions = (await self.db.scalars(
            sa.select(UploadSession).where(
                UploadSession.expires_at <= now,
                self._claimable(now),
            )
        )).all()

        expired = 0
        for session in sessions:
            chunks = await self._list_chunks(session.owner_id, session.id)
            logger.info("expiring session %s (%d orphaned chunk(s))", session.id, len(chunks))
            if dry_run:
                expired += 1
                continue

            try:
                await self.store.delete([f"{session.owner_id}/{name}" for _, name in chunks])
            except StorageError as e:
                logger.warning("session %s: failed to delete chunks: %s", session.id, e)
                continue

            await self.db.delete(session)
            expired += 1

        if not dry_run:
            await self.db.commit()

        return expired

    async def _load_session(self, owner_id: str, session_id: str) -> UploadSession:
        session = await self.db.scalar(
            sa.select(UploadSession)
            .where(UploadSession.id == session_id, UploadSession.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )

        if session is None:
            raise NotFoundError("Upload session not found")

        return session

    @staticmethod
    def _ensure_open(session: UploadSession) -> None:
        if session.is_expired(utcnow()):
            raise SessionExpiredError("Upload session has expired")

        if session.status != UploadStatus.OPEN:
            raise SessionConflictError(f"Upload session is {session.status}")

    def _claimable(self, now: datetime.datetime):
        """Open sessions, or finalizing ones whose claim holder stopped updating it."""
        return sa.or_(
            UploadSession.status == UploadStatus.OPEN.value,
            sa.and_(
                UploadSession.status == UploadStatus.FINALIZING.value,
                UploadSession.updated_at <= now - self.claim_timeout,
            ),
        )

    async def _claim(self, owner_id: str, session_id: str) -> bool:
        now = utcnow()
        result = await self.db.execute(
            sa.update(UploadSession)
            .where(
                UploadSession.id == session_id,
                UploadSession.owner_id == owner_id,
                self._claimable(now),
            )
            .values(status=UploadStatus.FINALIZING.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        return result.rowcount == 1

    async def _release(self, session_id: str) -> None:
        try:
            await self.db.rollback()
            await self.db.execute(
                sa.update(UploadSession)
                .where(
                    UploadSession.id == session_id,
                    UploadSession.status == UploadStatus.FINALIZING.value,
                )
                .values(status=UploadStatus.OPEN.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            logger.exception(
                "session %s: failed to release finalize claim, it can be taken over after %s",
                session_id, self.claim_timeout
            )

    async def _set_status(self, session_id: str, status: UploadStatus, **values) -> None:
        await self.db.execute(
            sa.update(UploadSession)
            .where(UploadSession.id == session_id)
            .values(status=status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _list_chunks(self, owner_id: str, session_id: str) -> List[Tuple[int, str]]:
        objects = await self.store.list(owner_id, chunk_prefix(session_id))

        chunks: List[Tuple[int, str]] = []
        for obj in objects:
            index = parse_chunk_index(obj.name, session_id)
            if index is not None:
                chunks.append((index, obj.name))

        return sorted(chunks)

    async def _assemble(self, owner_id: str, session_id: str) -> Tuple[FinalizeResult, List[str]]:
        chunks = await self._list_chunks(owner_id, session_id)
        if not chunks:
            raise NotFoundError("No chunks found for session")

        gaps = missing_indexes(index for index, _ in chunks)
        if gaps:
            logger.warning("session %s: finalizing with missing chunk(s) %s", session_id, gaps)

        chunk_paths = [f"{owner_id}/{name}" for _, name in chunks]

        buffer = bytearray()
        for path in chunk_paths:
            buffer.extend(await self.store.get(path))

        final_path = await self.store.put(
            f"{owner_id}/{final_object_name(session_id)}",
            bytes(buffer),
            FINAL_CONTENT_TYPE,
            overwrite=True,
        )

        result = FinalizeResult(
            url=self.store.public_url(final_path),
            path=final_path,
            file_size=len(buffer),
            chunks_processed=len(chunks),
        )
        return result, chunk_paths

    @staticmethod
    def _finalized_result(session: UploadSession) -> FinalizeResult:
        return FinalizeResult(
            url=session.final_url,
            path=session.final_path,
            file_size=session.final_size,
            chunks_processed=session.chunks_processed,
        )


async def get_upload_service(
        db: AsyncSession = Depends(get_db),
        store: ObjectStore = Depends(get_object_store),
) -> UploadService:
    return UploadService(db, store)
