import re
from typing import List, Optional, Iterable

from fastapi import UploadFile

from trainai.errors import SizeLimitError

CHUNK_INDEX_WIDTH = 6
CHUNK_MARKER = "_chunk_"
FINAL_SUFFIX = "_final.webm"
FINAL_CONTENT_TYPE = "video/webm"

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")
_DIGITS = re.compile(r"[0-9]+")


def chunk_prefix(session_id: str) -> str:
    return f"{session_id}{CHUNK_MARKER}"


def chunk_object_name(session_id: str, index: int) -> str:
    return f"{chunk_prefix(session_id)}{index:0{CHUNK_INDEX_WIDTH}d}"


def final_object_name(session_id: str) -> str:
    return f"{session_id}{FINAL_SUFFIX}"


def parse_chunk_index(name: str, session_id: str) -> Optional[int]:
    """Return the chunk index encoded in ``name``, or None if it is not a chunk of this session."""
    prefix = chunk_prefix(session_id)
    if not name.startswith(prefix):
        return None

    digits = name[len(prefix):]
    if not _DIGITS.fullmatch(digits):
        return None

    return int(digits)


def missing_indexes(indexes: Iterable[int]) -> List[int]:
    present = set(indexes)
    if not present:
        return []

    return [i for i in range(max(present)) if i not in present]


def safe_file_name(file_name: str) -> str:
    name = _SAFE_NAME.sub("_", file_name.rsplit("/", 1)[-1]).strip("._")
    return name or "upload"


async def read_file_from_upload_file(file: UploadFile, max_file_size: int) -> bytes:
    data = bytearray()
    while chunk := await file.read(1024 * 1024):
        data.extend(chunk)
        if len(data) > max_file_size:
            raise SizeLimitError(f"File exceeds max file size: '{file.filename}'")

    return bytes(data)
