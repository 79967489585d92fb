# chunkvault

A small service for uploading large files in pieces. A client opens an
upload session over HTTP, then streams numbered chunks over a TCP
connection. Each chunk is written to disk by a pool of worker threads and
acknowledged back to the client once it is stored.

It uses only the Python standard library (Python 3.10 or later).

## Installing

    pip install .

For running the tests:

    pip install ".[test]"
    pytest

## Running the service

    chunkvault

This starts the chunk-writing worker pools and two listeners:

* an HTTP server on port 8000 that accepts `POST /upload/init`;
* a TCP listener on `:9000` that receives the chunks.

Options:

| option             | default                 | meaning                                   |
|--------------------|-------------------------|-------------------------------------------|
| `--http-host`      | empty (all interfaces)  | address the HTTP server binds to          |
| `--http-port`      | `8000`                  | port of the HTTP server                   |
| `--tcp-address`    | `:9000`                 | `host:port` of the TCP chunk listener     |
| `--allowed-origin` | `http://localhost:3000` | origin allowed to make cross-origin calls |

Stop the service with Ctrl-C.

## Opening a session

Send a JSON body to `POST /upload/init`:

    {
      "uploadID": "abc123",
      "filename": "movie.mkv",
      "final_path": "/tmp/uploads",
      "chunk_size": 1048576,
      "total_chunks": 12
    }

Missing fields default to an empty string or `0`. A valid request is
answered with `201 Created` and `{"message": "Upload Session Created"}`.
A body that is not a JSON object, or has a field of the wrong type, is
answered with `400 Bad Request` and the text `Invalid JSON body`.

Other methods on `/upload/init` get `405`, other paths get `404`.
Requests whose `Origin` is the allowed origin receive
`Access-Control-Allow-Origin` and `Access-Control-Allow-Credentials`
headers. Preflight `OPTIONS` requests may ask for the methods `GET`,
`POST`, `DELETE` and `OPTIONS` and for the headers `Content-Type` and
`X-Chunk-Index`, as well as the simple CORS headers.

## The TCP protocol

Every frame starts with a 4-byte big-endian length followed by a JSON
header of that length:

    {"upload_id": "abc123", "operation_code": 1, "chunk_no": 0, "chunk_size": 1048576}

Fields left out of a header keep their value from the previous header on
the same connection. The `upload_id` must name a session opened over
HTTP. If it does not, the connection is closed.

| code | meaning                                                             |
|------|---------------------------------------------------------------------|
| 0    | start the session on this connection (send this first)              |
| 1    | upload a chunk; exactly `chunk_size` raw bytes follow the header    |
| 2    | finish the upload                                                   |
| 3    | cancel the upload                                                   |

Any other code is logged and ignored. A header that is not valid JSON is
logged and skipped. The connection is closed when a header cannot be read
in full.

The server writes JSON replies to the same connection. The replies are
compact, with no spaces between items:

* chunk stored: `{"uploadID":"abc123","chunk_no":0,"status":"ok"}`
* chunk could not be read or written:
  `{"uploadID":"abc123","chunk_no":0,"error":"..."}`
* finish before all chunks are confirmed: `{"error":"upload not complete"}`
* finish after all chunks are confirmed:
  `{"status":"complete","upload_id":"abc123"}`, then the connection closes
* cancel: `{"status":"cancelled","upload_id":"abc123"}`, then the
  connection closes

Each chunk is stored as its own file in `<final_path>/<uploadID>/`. The
file name is `ChunkJob(upload=<uploadID>, chunk=<chunk_no>)`.

## What it does not do

* Sessions live only in memory and are lost when the service stops.
* Chunk files are not joined into the final file. They stay as separate
  files in the upload directory.
* There are no idle timeouts on connections or sessions.
* Operation code 4 (`OpCode.RETRANSMISSION`) is defined but has no
  handler. To resend a chunk, send it again with code 1.

## Using it as a library

* `chunkvault.config`: protocol constants, the `OpCode` enum and the
  worker-pool sizes.
* `chunkvault.safemap.SafeMap`: a thread-safe string-keyed map with
  `add`, `remove`, `contains` and `get` (`get` returns `None` for a
  missing key). It also supports `in` and `len()`.
* `chunkvault.chunk_job`:
  * `create_chunk_job` builds a job.
  * `ChunkJob.file_path` gives the file a job writes to.
  * `ChunkJobAck.to_json` and `ChunkJobError.to_json` give the reply
    messages.
  * `ChunkJobPipeline` holds bounded queues and offers
    `start_worker_pool`, `start_error_handler_pool`,
    `start_confirmation_handler_pool`, `add_chunk_job` and `write_chunk`.
  * `instantiate_pipeline` creates the shared pipeline once.
    `get_pipeline` returns it, or raises `PipelineNotInitializedError`
    if it has not been created yet.
* `chunkvault.upload_session.UploadSession`: per-upload state.
  `notify_confirmation` counts confirmed chunks and marks the session
  complete when all are in.
* `chunkvault.tcp_core`:
  * `read_header` and `read_chunk` raise `ProtocolError` on short reads.
  * `init_upload_session`, `handle_connection` and `start_tcp_listener`
    run the TCP side.
* `chunkvault.app`: `handle_init_upload` and `make_handler` for the HTTP
  side, and `main`, which the `chunkvault` command runs.