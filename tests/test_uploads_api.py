import asyncio
from unittest.mock import AsyncMock

import pytest

from trainai.services import upload_service as upload_service_module

MIB = 1024 * 1024


class CountingStore:
    def __init__(self, store):
        self._store = store
        self.gets = 0

    def __getattr__(self, name):
        return getattr(self._store, name)

    async def get(self, path):
        self.gets += 1
        await asyncio.sleep(0)
        return await self._store.get(path)


def init_body(**overrides):
    body = {"fileName": "a.webm", "fileSize": 300, "fileType": "video/webm", "uploadId": "u1"}
    body.update(overrides)
    return body


async def send_chunk(client, headers, session_id, index, payload):
    return await client.post(
        "/upload/chunk",
        headers=headers,
        data={"chunkIndex": str(index), "sessionId": session_id},
        files={"chunk": (f"chunk_{index}", payload, "video/webm")},
    )


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_end_to_end_two_chunks(client, auth_headers):
    response = await client.post("/upload/init", headers=auth_headers, json=init_body())
    assert response.status_code == 200
    session = response.json()
    assert session["sessionId"].startswith("session-u1-")
    assert session["uploadPath"] == f"user-1/{session['sessionId']}"
    assert session["uploadUrl"] == "/upload/chunk"

    for index in (0, 1):
        response = await send_chunk(client, auth_headers, session["sessionId"], index, bytes([index]) * 150)
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "chunkIndex": index,
            "chunkPath": f"user-1/{session['sessionId']}_chunk_{index:06d}",
        }

    response = await client.post("/upload/finalize", headers=auth_headers, json={"sessionId": session["sessionId"]})

    assert response.status_code == 200
    result = response.json()
    assert result["fileSize"] == 300
    assert result["chunksProcessed"] == 2
    assert result["path"] == f"user-1/{session['sessionId']}_final.webm"
    assert result["url"] == f"http://testserver/storage/{result['path']}"


@pytest.mark.parametrize("file_size, expected", [(100 * MIB, 200), (100 * MIB + 1, 413)])
async def test_init_size_boundary(client, auth_headers, file_size, expected):
    response = await client.post("/upload/init", headers=auth_headers, json=init_body(fileSize=file_size))

    assert response.status_code == expected
    if expected == 413:
        assert "error" in response.json()


@pytest.mark.parametrize("missing", ["fileName", "fileSize", "fileType", "uploadId"])
async def test_init_missing_field_is_bad_request(client, auth_headers, missing):
    body = init_body()
    del body[missing]

    response = await client.post("/upload/init", headers=auth_headers, json=body)

    assert response.status_code == 400
    assert "error" in response.json()


@pytest.mark.parametrize("overrides", [{"fileSize": 0}, {"fileSize": -5}, {"uploadId": "../escape"}, {"fileName": ""}])
async def test_init_invalid_field_is_bad_request(client, auth_headers, overrides):
    response = await client.post("/upload/init", headers=auth_headers, json=init_body(**overrides))

    assert response.status_code == 400


async def test_same_upload_id_in_same_millisecond_collides(client, auth_headers, monkeypatch):
    monkeypatch.setattr(upload_service_module, "current_millis", lambda: 1700000000000)

    first = await client.post("/upload/init", headers=auth_headers, json=init_body())
    second = await client.post("/upload/init", headers=auth_headers, json=init_body())

    assert first.status_code == 200
    assert second.status_code == 409
    assert "error" in second.json()


async def test_chunk_validation(client, auth_headers):
    session_id = (await client.post("/upload/init", headers=auth_headers, json=init_body())).json()["sessionId"]

    bad_index = await client.post(
        "/upload/chunk",
        headers=auth_headers,
        data={"chunkIndex": "abc", "sessionId": session_id},
        files={"chunk": ("c", b"x", "video/webm")},
    )
    negative = await send_chunk(client, auth_headers, session_id, -1, b"x")
    no_file = await client.post(
        "/upload/chunk",
        headers=auth_headers,
        data={"chunkIndex": "0", "sessionId": session_id},
    )
    no_session = await client.post(
        "/upload/chunk",
        headers=auth_headers,
        data={"chunkIndex": "0"},
        files={"chunk": ("c", b"x", "video/webm")},
    )

    assert bad_index.status_code == 400
    assert negative.status_code == 400
    assert no_file.status_code == 400
    assert no_session.status_code == 400


async def test_chunk_for_unknown_session_is_not_found(client, auth_headers):
    response = await send_chunk(client, auth_headers, "session-nope-1", 0, b"x")

    assert response.status_code == 404
    assert response.json() == {"error": "Upload session not found"}


async def test_finalize_requires_session_id(client, auth_headers):
    response = await client.post("/upload/finalize", headers=auth_headers, json={})

    assert response.status_code == 400


async def test_finalize_without_chunks_is_not_found(client, auth_headers):
    session_id = (await client.post("/upload/init", headers=auth_headers, json=init_body())).json()["sessionId"]

    response = await client.post("/upload/finalize", headers=auth_headers, json={"sessionId": session_id})

    assert response.status_code == 404
    assert response.json() == {"error": "No chunks found for session"}


async def test_sessions_are_scoped_to_owner(client, auth_headers, other_auth_headers):
    session_id = (await client.post("/upload/init", headers=auth_headers, json=init_body())).json()["sessionId"]
    await send_chunk(client, auth_headers, session_id, 0, b"mine")

    chunk = await send_chunk(client, other_auth_headers, session_id, 1, b"theirs")
    finalize = await client.post("/upload/finalize", headers=other_auth_headers, json={"sessionId": session_id})
    status = await client.get(f"/upload/{session_id}", headers=other_auth_headers)

    assert chunk.status_code == 404
    assert finalize.status_code == 404
    assert status.status_code == 404


@pytest.mark.parametrize("method, url, kwargs", [
    ("post", "/upload/init", {"json": init_body()}),
    ("post", "/upload/chunk", {"data": {"chunkIndex": "0", "sessionId": "session-u1-1"},
                               "files": {"chunk": ("c", b"x", "video/webm")}}),
    ("post", "/upload/finalize", {"json": {"sessionId": "session-u1-1"}}),
    ("post", "/upload", {"files": {"video": ("a.webm", b"x", "video/webm")}}),
    ("get", "/upload/session-u1-1", {}),
])
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer not-a-jwt"}])
async def test_unauthenticated_requests_never_touch_storage(client, override_store, method, url, kwargs, headers):
    mock_store = AsyncMock()
    override_store["store"] = mock_store

    response = await getattr(client, method)(url, headers=headers, **kwargs)

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert mock_store.mock_calls == []


async def test_single_shot_upload(client, auth_headers, store):
    response = await client.post(
        "/upload",
        headers=auth_headers,
        files={"video": ("demo recording.webm", b"tiny", "video/webm")},
    )

    assert response.status_code == 200
    result = response.json()
    assert result["path"].startswith("user-1/")
    assert result["path"].endswith("-demo_recording.webm")
    assert result["url"] == f"http://testserver/storage/{result['path']}"
    assert await store.get(result["path"]) == b"tiny"


async def test_single_shot_upload_requires_file(client, auth_headers):
    response = await client.post("/upload", headers=auth_headers, data={"other": "x"})

    assert response.status_code == 400


async def test_session_status(client, auth_headers):
    session_id = (await client.post("/upload/init", headers=auth_headers, json=init_body())).json()["sessionId"]
    await send_chunk(client, auth_headers, session_id, 0, b"a")
    await send_chunk(client, auth_headers, session_id, 2, b"c")

    status = (await client.get(f"/upload/{session_id}", headers=auth_headers)).json()

    assert status["sessionId"] == session_id
    assert status["status"] == "open"
    assert status["chunksReceived"] == [0, 2]
    assert status["missingChunks"] == [1]
    assert status["url"] is None

    await client.post("/upload/finalize", headers=auth_headers, json={"sessionId": session_id})
    status = (await client.get(f"/upload/{session_id}", headers=auth_headers)).json()

    assert status["status"] == "finalized"
    assert status["url"].endswith(f"{session_id}_final.webm")


async def test_concurrent_finalize_requests_assemble_once(client, auth_headers, override_store, store):
    session_id = (await client.post("/upload/init", headers=auth_headers, json=init_body())).json()["sessionId"]
    for index in range(3):
        await send_chunk(client, auth_headers, session_id, index, bytes([index]) * 100)

    counting = CountingStore(store)
    override_store["store"] = counting

    responses = await asyncio.gather(*(
        client.post("/upload/finalize", headers=auth_headers, json={"sessionId": session_id}) for _ in range(2)
    ))

    statuses = sorted(r.status_code for r in responses)
    assert statuses in ([200, 200], [200, 409])
    assert counting.gets == 3

    done = [r.json() for r in responses if r.status_code == 200]
    assert all(body == done[0] for body in done)
    assert done[0]["fileSize"] == 300


async def test_concurrent_chunk_requests_for_one_session(client, auth_headers, store):
    session_id = (await client.post("/upload/init", headers=auth_headers, json=init_body())).json()["sessionId"]
    parts = [bytes([index]) * 50 for index in range(6)]

    responses = await asyncio.gather(*(
        send_chunk(client, auth_headers, session_id, index, parts[index]) for index in range(6)
    ))
    assert [r.status_code for r in responses] == [200] * 6

    response = await client.post("/upload/finalize", headers=auth_headers, json={"sessionId": session_id})

    assert response.status_code == 200
    assert response.json()["chunksProcessed"] == 6
    assert await store.get(response.json()["path"]) == b"".join(parts)
