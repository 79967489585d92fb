import io
import json
import socket
import struct
import threading

import pytest

from chunkvault.chunk_job import (
    ChunkJobAck,
    ChunkJobError,
    ChunkJobPipeline,
    create_chunk_job,
)
from chunkvault.config import OpCode
from chunkvault.safemap import SafeMap
from chunkvault.tcp_core import (
    ProtocolError,
    _parse_address,
    _serve,
    handle_connection,
    init_upload_session,
    read_chunk,
    read_header,
    start_tcp_listener,
)
from chunkvault.upload_session import UploadSession


def _frame(header):
    body = json.dumps(header).encode("utf-8")
    return struct.pack(">I", len(body)) + body


def _recv_exact(sock, size):
    data = b""
    while len(data) < size:
        part = sock.recv(size - len(data))
        if not part:
            break
        data += part
    return data


def _recv_all(sock):
    data = b""
    while True:
        part = sock.recv(1024)
        if not part:
            break
        data += part
    return data


@pytest.fixture
def pipeline():
    stop = threading.Event()
    pipe = ChunkJobPipeline(10)
    pipe.start_worker_pool(stop, 2)
    pipe.start_error_handler_pool(stop, 1)
    pipe.start_confirmation_handler_pool(stop, 1)
    yield pipe
    stop.set()


@pytest.fixture
def socket_pair():
    server, client = socket.socketpair()
    client.settimeout(5)
    yield server, client
    client.close()
    server.close()


def _make_session(tmp_path, upload_id="u1", total_chunks=1):
    return UploadSession(
        upload_id=upload_id,
        total_chunks=total_chunks,
        chunk_size=4,
        parent_path=str(tmp_path),
        file_name="file.bin",
    )


def test_read_header_returns_payload_and_leaves_rest():
    stream = io.BytesIO(struct.pack(">I", 5) + b"hello" + b"rest")
    assert read_header(stream, 4) == b"hello"
    assert stream.read() == b"rest"


def test_read_header_short_prefix():
    with pytest.raises(ProtocolError, match="header len"):
        read_header(io.BytesIO(b"\x00\x00"), 4)


def test_read_header_short_body():
    with pytest.raises(ProtocolError, match="header bytes"):
        read_header(io.BytesIO(struct.pack(">I", 10) + b"abc"), 4)


def test_read_chunk_exact_and_short():
    stream = io.BytesIO(b"abcdef")
    assert read_chunk(stream, 4) == b"abcd"
    with pytest.raises(ProtocolError):
        read_chunk(stream, 4)


def test_dispatcher_writes_errors_to_client(tmp_path, socket_pair):
    server, client = socket_pair
    session = _make_session(tmp_path)
    stop = threading.Event()
    init_upload_session(stop, session, server, ChunkJobPipeline(4), 8, 16, 16)
    error = ChunkJobError(upload_id="u1", chunk_no=3, error=OSError("disk full"))
    session.err_queue.put(error)
    expected = error.to_json()
    assert _recv_exact(client, len(expected)) == expected
    stop.set()


def test_dispatcher_forwards_jobs_to_pipeline(tmp_path, socket_pair):
    server, _ = socket_pair
    session = _make_session(tmp_path)
    pipe = ChunkJobPipeline(4)
    stop = threading.Event()
    init_upload_session(stop, session, server, pipe, 8, 16, 16)
    job = create_chunk_job("u1", 0, tmp_path, b"data", session.ack_queue, session.err_queue)
    session.in_queue.put(job)
    assert pipe.jobs.get(timeout=5) is job
    stop.set()


def test_dispatcher_stops_on_stop_event(tmp_path, socket_pair):
    server, _ = socket_pair
    session = _make_session(tmp_path)
    stop = threading.Event()
    thread = init_upload_session(stop, session, server, ChunkJobPipeline(4), 8, 16, 16)
    assert session.conn is server
    stop.set()
    thread.join(timeout=5)
    assert not thread.is_alive()


def test_full_upload_flow(tmp_path, socket_pair, pipeline):
    server, client = socket_pair
    session = _make_session(tmp_path)
    sessions = SafeMap()
    sessions.add("u1", session)
    worker = threading.Thread(target=handle_connection, args=(server, sessions, pipeline))
    worker.start()

    client.sendall(_frame({"upload_id": "u1", "operation_code": int(OpCode.INIT)}))
    client.sendall(
        _frame(
            {
                "upload_id": "u1",
                "operation_code": int(OpCode.CHUNK),
                "chunk_no": 0,
                "chunk_size": 4,
            }
        )
        + b"data"
    )
    ack = ChunkJobAck(upload_id="u1", chunk_no=0).to_json()
    assert _recv_exact(client, len(ack)) == ack

    client.sendall(_frame({"upload_id": "u1", "operation_code": int(OpCode.FINISH)}))
    reply = _recv_all(client)
    worker.join(timeout=5)

    assert json.loads(reply) == {"upload_id": "u1", "status": "complete"}
    assert session.is_complete
    assert session.chunks_uploaded == 1
    written = create_chunk_job("u1", 0, tmp_path, b"", None, None).file_path()
    assert written.read_bytes() == b"data"


def test_finish_before_complete_reports_error(tmp_path, socket_pair, pipeline):
    server, client = socket_pair
    sessions = SafeMap()
    sessions.add("u1", _make_session(tmp_path, total_chunks=2))
    worker = threading.Thread(target=handle_connection, args=(server, sessions, pipeline))
    worker.start()

    client.sendall(_frame({"upload_id": "u1", "operation_code": int(OpCode.FINISH)}))
    expected = json.dumps({"error": "upload not complete"}, separators=(",", ":")).encode()
    assert _recv_exact(client, len(expected)) == expected
    assert worker.is_alive()

    client.shutdown(socket.SHUT_WR)
    worker.join(timeout=5)
    assert not worker.is_alive()


def test_cancel_marks_session_done(tmp_path, socket_pair, pipeline):
    server, client = socket_pair
    session = _make_session(tmp_path)
    sessions = SafeMap()
    sessions.add("u1", session)
    worker = threading.Thread(target=handle_connection, args=(server, sessions, pipeline))
    worker.start()

    client.sendall(_frame({"upload_id": "u1", "operation_code": int(OpCode.CANCEL)}))
    reply = _recv_all(client)
    worker.join(timeout=5)

    assert json.loads(reply) == {"upload_id": "u1", "status": "cancelled"}
    assert session.done.is_set()


def test_unknown_session_closes_connection(socket_pair, pipeline):
    server, client = socket_pair
    worker = threading.Thread(target=handle_connection, args=(server, SafeMap(), pipeline))
    worker.start()
    client.sendall(_frame({"upload_id": "missing", "operation_code": int(OpCode.INIT)}))
    assert client.recv(16) == b""
    worker.join(timeout=5)
    assert not worker.is_alive()


def test_parse_address():
    assert _parse_address(":9000") == ("", 9000)
    assert _parse_address("127.0.0.1:0") == ("127.0.0.1", 0)
    with pytest.raises(ValueError):
        _parse_address("localhost")


def test_start_tcp_listener_rejects_bad_address(pipeline):
    with pytest.raises(ValueError):
        start_tcp_listener("localhost:port", SafeMap(), pipeline)


def test_serve_handles_clients(tmp_path, pipeline):
    session = _make_session(tmp_path)
    sessions = SafeMap()
    sessions.add("u1", session)
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    threading.Thread(target=_serve, args=(listener, sessions, pipeline), daemon=True).start()
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=5) as client:
            client.sendall(_frame({"upload_id": "u1", "operation_code": int(OpCode.CANCEL)}))
            reply = _recv_all(client)
    finally:
        listener.close()

    assert json.loads(reply) == {"upload_id": "u1", "status": "cancelled"}
    assert session.done.is_set()