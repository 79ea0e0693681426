import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette import status

from trainai.config import config
from trainai.errors import ValidationError
from trainai.services.auth_service import AuthService, CurrentUser
from trainai.services.upload_service import UploadService, get_upload_service
from trainai.utils.files import read_file_from_upload_file

router = APIRouter(prefix="/upload", tags=["upload"])

SAFE_ID_PATTERN = r"^[A-Za-z0-9_-]+$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitUploadIn(CamelModel):
    file_name: str = Field(min_length=1)
    file_size: int = Field(gt=0)
    file_type: str = Field(min_length=1)
    upload_id: str = Field(min_length=1, max_length=128, pattern=SAFE_ID_PATTERN)


class InitUploadOut(CamelModel):
    session_id: str
    upload_url: str
    upload_path: str


class ChunkOut(CamelModel):
    success: bool = True
    chunk_index: int
    chunk_path: str


class FinalizeIn(CamelModel):
    session_id: str = Field(min_length=1, max_length=255, pattern=SAFE_ID_PATTERN)


class FinalizeOut(CamelModel):
    url: str
    path: str
    file_size: int
    chunks_processed: int


class UploadOut(CamelModel):
    url: str
    path: str


class SessionStatusOut(CamelModel):
    session_id: str
    status: str
    file_name: str
    file_size: int
    chunks_received: List[int]
    missing_chunks: List[int]
    expires_at: datetime.datetime
    url: Optional[str] = None


@router.post("/init", response_model=InitUploadOut, status_code=status.HTTP_200_OK)
async def init_upload(
        body: InitUploadIn,
        user: CurrentUser = Depends(AuthService.get_current_user),
        uploads: UploadService = Depends(get_upload_service),
):
    result = await uploads.init_session(user.id, body.file_name, body.file_size, body.file_type, body.upload_id)
    return InitUploadOut(session_id=result.session_id, upload_url=result.upload_url, upload_path=result.upload_path)


@router.post("/chunk", response_model=ChunkOut, status_code=status.HTTP_200_OK)
async def upload_chunk(
        chunk: UploadFile = File(...),
        chunk_index: int = Form(..., alias="chunkIndex", ge=0),
        session_id: str = Form(..., alias="sessionId", min_length=1, max_length=255, pattern=SAFE_ID_PATTERN),
        user: CurrentUser = Depends(AuthService.get_current_user),
        uploads: UploadService = Depends(get_upload_service),
):
    data = await read_file_from_upload_file(chunk, config.MAX_FILE_SIZE)
    result = await uploads.receive_chunk(user.id, session_id, chunk_index, data, chunk.content_type)
    return ChunkOut(chunk_index=result.chunk_index, chunk_path=result.chunk_path)


@router.post("/finalize", response_model=FinalizeOut, status_code=status.HTTP_200_OK)
async def finalize_upload(
        body: FinalizeIn,
        user: CurrentUser = Depends(AuthService.get_current_user),
        uploads: UploadService = Depends(get_upload_service),
):
    result = await uploads.finalize(user.id, body.session_id)
    return FinalizeOut(
        url=result.url,
        path=result.path,
        file_size=result.file_size,
        chunks_processed=result.chunks_processed
    )


@router.post("", response_model=UploadOut, status_code=status.HTTP_200_OK)
async def upload_video(
        video: Optional[UploadFile] = File(None),
        user: CurrentUser = Depends(AuthService.get_current_user),
        uploads: UploadService = Depends(get_upload_service),
):
    if video is None or not video.filename:
        raise ValidationError("No video file provided")

    data = await read_file_from_upload_file(video, config.MAX_FILE_SIZE)
    result = await uploads.upload_single(user.id, video.filename, data, video.content_type)
    return UploadOut(url=result.url, path=result.path)


@router.get("/{session_id}", response_model=SessionStatusOut, status_code=status.HTTP_200_OK)
async def get_upload_status(
        session_id: str,
        user: CurrentUser = Depends(AuthService.get_current_user),
        uploads: UploadService = Depends(get_upload_service),
):
    state = await uploads.get_state(user.id, session_id)
    session = state.session

    return SessionStatusOut(
        session_id=session.id,
        status=session.status,
        file_name=session.file_name,
        file_size=session.file_size,
        chunks_received=state.chunks_received,
        missing_chunks=state.missing_chunks,
        expires_at=session.expires_at,
        url=session.final_url,
    )
