import asyncio
import base64
import json
import threading

import pytest
import redis

from registry import SessionRegistry
from storage import FileStorage


def event(**fields):
    return json.dumps(fields)


def types(messages):
    return [m["type"] for m in messages]


async def pair(hub, drain):
    creator = hub.connect(server_url="http://relay.local")
    await hub.handle(creator, event(type="create-session", role="mobile"))
    created = [m for m in drain(creator) if m["type"] == "session-created"][0]
    joiner = hub.connect()
    await hub.handle(joiner, event(type="join-session", sessionId=created["sessionId"], role="web"))
    drain(creator)
    drain(joiner)
    return created["sessionId"], creator, joiner


@pytest.mark.anyio
async def test_create_session_joins_creator(hub, drain):
    creator = hub.connect(server_url="http://relay.local")

    await hub.handle(creator, event(type="create-session"))

    messages = drain(creator)
    assert types(messages) == ["session-joined", "session-created"]
    created = messages[1]
    assert created["joinPayload"] == {
        "type": "connect",
        "sessionId": created["sessionId"],
        "serverUrl": "http://relay.local",
    }
    assert creator.device == "mobile"
    assert hub.registry.lookup_session(created["sessionId"]).id == created["sessionId"]


@pytest.mark.anyio
async def test_create_session_prefers_explicit_server_url(hub, drain):
    creator = hub.connect(server_url="http://relay.local")
    await hub.handle(creator, event(type="create-session", serverUrl="http://10.0.0.2:8000"))
    created = drain(creator)[1]
    assert created["joinPayload"]["serverUrl"] == "http://10.0.0.2:8000"


@pytest.mark.anyio
async def test_create_twice_rejected_without_new_session(hub, drain):
    creator = hub.connect()
    await hub.handle(creator, event(type="create-session"))
    drain(creator)
    sessions_before = len(hub.registry.backend)

    await hub.handle(creator, event(type="create-session"))

    assert drain(creator)[0]["code"] == "pairing-rejected"
    assert len(hub.registry.backend) == sessions_before


@pytest.mark.anyio
async def test_join_unknown_session(hub, drain):
    conn = hub.connect()
    await hub.handle(conn, event(type="join-session", sessionId="nope"))
    reply = drain(conn)
    assert reply[0]["type"] == "error"
    assert reply[0]["code"] == "session-not-found"
    assert conn.session_id is None


@pytest.mark.anyio
async def test_malformed_events_answered_with_error(hub, drain):
    conn = hub.connect()
    await hub.handle(conn, "not json")
    await hub.handle(conn, event(type="teleport"))
    await hub.handle(conn, event(type="file-meta", sessionId="s"))
    assert [m["code"] for m in drain(conn)] == ["invalid-message"] * 3


@pytest.mark.anyio
async def test_full_transfer_and_acknowledgement(hub, drain):
    session_id, sender, receiver = await pair(hub, drain)

    await hub.handle(sender, event(type="file-meta", sessionId=session_id, fileName="a.txt",
                                   fileSize=6, fileType="text/plain"))
    for index, (payload, last) in enumerate([(b"abc", False), (b"def", True)]):
        await hub.handle(sender, event(type="file-chunk", sessionId=session_id, fileName="a.txt",
                                       chunk=base64.b64encode(payload).decode(), isLast=last, index=index))
    incoming = drain(receiver)
    assert types(incoming) == ["file-incoming", "file-chunk", "file-chunk"]
    assert incoming[0]["from"] == "mobile"

    await hub.handle(receiver, event(type="file-received", sessionId=session_id, fileName="a.txt"))
    assert drain(sender) == [{"type": "file-sent", "fileName": "a.txt"}]


@pytest.mark.anyio
async def test_invalid_base64_chunk(hub, drain):
    session_id, sender, receiver = await pair(hub, drain)
    await hub.handle(sender, event(type="file-meta", sessionId=session_id, fileName="a", fileSize=3))
    await hub.handle(sender, event(type="file-chunk", sessionId=session_id, fileName="a", chunk="@@@", isLast=True))
    assert drain(sender)[0]["code"] == "invalid-message"
    assert session_id in hub.store


@pytest.mark.anyio
async def test_concurrent_announcements_do_not_clobber(hub, drain):
    session_id, sender, receiver = await pair(hub, drain)

    await hub.handle(sender, event(type="file-meta", sessionId=session_id, fileName="one.txt", fileSize=3))
    await hub.handle(receiver, event(type="file-meta", sessionId=session_id, fileName="two.txt", fileSize=9))

    assert drain(receiver)[-1]["code"] == "transfer-in-progress"
    assert hub.store.get(session_id).file_name == "one.txt"
    assert drain(sender) == []


@pytest.mark.anyio
async def test_disconnect_mid_transfer_stops_relay(hub, drain):
    session_id, sender, receiver = await pair(hub, drain)
    await hub.handle(sender, event(type="file-meta", sessionId=session_id, fileName="a", fileSize=10))
    await hub.handle(sender, event(type="file-chunk", sessionId=session_id, fileName="a",
                                   chunk=base64.b64encode(b"abc").decode(), index=0))

    hub.disconnect(receiver)
    hub.disconnect(receiver)

    assert session_id not in hub.store
    assert drain(sender) == [{"type": "peer-disconnected", "sessionId": session_id}]
    await hub.handle(sender, event(type="file-chunk", sessionId=session_id, fileName="a",
                                   chunk=base64.b64encode(b"def").decode(), index=1))
    assert drain(sender)[0]["code"] == "not-paired"
    assert receiver.closed


@pytest.mark.anyio
async def test_storage_mode_stores_completed_file(registry, drain, tmp_path):
    from hub import SessionHub

    hub = SessionHub(registry, storage=FileStorage(tmp_path))
    session_id, sender, receiver = await pair(hub, drain)

    await hub.handle(sender, event(type="file-meta", sessionId=session_id, fileName="doc.pdf", fileSize=4))
    await hub.handle(sender, event(type="file-chunk", sessionId=session_id, fileName="doc.pdf",
                                   chunk=base64.b64encode(b"%PDF").decode(), isLast=True, index=0))

    stored = drain(sender)[-1]
    assert stored["type"] == "file-stored"
    assert drain(receiver)[-1] == stored
    assert hub.storage.resolve(stored["storedName"]).read_bytes() == b"%PDF"
    assert stored["url"] == f"/files/{stored['storedName']}"


class SlowAppendStorage(FileStorage):
    """Blocks every append in the executor until released."""

    def __init__(self, directory):
        super().__init__(directory)
        self.started = threading.Event()
        self.release = threading.Event()

    def _append(self, transfer_id, data):
        self.started.set()
        self.release.wait(5)
        super()._append(transfer_id, data)


@pytest.mark.anyio
async def test_disconnect_during_slow_append_leaves_no_partial(registry, drain, tmp_path):
    from hub import SessionHub

    storage = SlowAppendStorage(tmp_path)
    hub = SessionHub(registry, storage=storage)
    session_id, sender, receiver = await pair(hub, drain)
    await hub.handle(sender, event(type="file-meta", sessionId=session_id, fileName="a.bin", fileSize=6))

    pending = asyncio.ensure_future(hub.handle(sender, event(
        type="file-chunk", sessionId=session_id, fileName="a.bin",
        chunk=base64.b64encode(b"abc").decode(), index=0)))
    while not storage.started.is_set():
        await asyncio.sleep(0.01)

    hub.disconnect(receiver)
    hub.disconnect(sender)
    storage.release.set()
    await pending

    assert list(storage.partial_dir.iterdir()) == []
    assert list(p for p in tmp_path.iterdir() if p.is_file()) == []


@pytest.mark.anyio
async def test_oversize_chunk_discards_partial(registry, drain, tmp_path):
    from hub import SessionHub

    hub = SessionHub(registry, storage=FileStorage(tmp_path))
    session_id, sender, receiver = await pair(hub, drain)
    await hub.handle(sender, event(type="file-meta", sessionId=session_id, fileName="a.bin", fileSize=2))
    await hub.handle(sender, event(type="file-chunk", sessionId=session_id, fileName="a.bin",
                                   chunk=base64.b64encode(b"abc").decode(), isLast=True))

    assert drain(sender)[-1]["code"] == "oversize-file"
    assert list(hub.storage.partial_dir.iterdir()) == []


@pytest.mark.anyio
async def test_each_transfer_spools_to_its_own_file(registry, drain, tmp_path):
    from hub import SessionHub

    hub = SessionHub(registry, storage=FileStorage(tmp_path))
    session_id, sender, receiver = await pair(hub, drain)
    stored = []
    for name, payload in [("one.txt", b"first"), ("two.txt", b"second")]:
        await hub.handle(sender, event(type="file-meta", sessionId=session_id, fileName=name, fileSize=len(payload)))
        await hub.handle(sender, event(type="file-chunk", sessionId=session_id, fileName=name,
                                       chunk=base64.b64encode(payload).decode(), isLast=True, index=0))
        stored.append(drain(sender)[-1]["storedName"])

    assert [hub.storage.resolve(name).read_bytes() for name in stored] == [b"first", b"second"]
    assert list(hub.storage.partial_dir.iterdir()) == []


class UnavailableBackend:
    def put(self, session_id, record, ttl=None):
        raise redis.ConnectionError("redis down")

    def get(self, session_id):
        raise redis.ConnectionError("redis down")


@pytest.mark.anyio
async def test_session_store_failure_is_reported_to_peer(drain):
    from hub import SessionHub

    hub = SessionHub(SessionRegistry(UnavailableBackend(), render_qr=False))
    conn = hub.connect()

    await hub.handle(conn, event(type="create-session"))
    await hub.handle(conn, event(type="join-session", sessionId="abc"))

    replies = drain(conn)
    assert [(m["type"], m["code"]) for m in replies] == [("error", "channel-error")] * 2
    assert conn.session_id is None
    assert not conn.closed


@pytest.mark.anyio
async def test_unexpected_failure_keeps_connection(hub, drain, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(hub.registry, "create_session", explode)
    conn = hub.connect()

    await hub.handle(conn, event(type="create-session"))
    await hub.handle(conn, event(type="join-session", sessionId="missing"))

    assert [m["code"] for m in drain(conn)] == ["channel-error", "session-not-found"]
