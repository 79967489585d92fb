"""Protocol constants and worker-pool sizing for the upload service."""

from enum import IntEnum

# Number of bytes of the big-endian length prefix in front of every header.
HEADER_LENGTH = 4


class OpCode(IntEnum):
    """Operation codes carried in the JSON header of each frame."""

    INIT = 0
    CHUNK = 1
    FINISH = 2
    CANCEL = 3
    RETRANSMISSION = 4


UPLOAD_INIT_OPCODE = OpCode.INIT
UPLOAD_CHUNK_OPCODE = OpCode.CHUNK
UPLOAD_FINISH_OPCODE = OpCode.FINISH
UPLOAD_CANCEL_OPCODE = OpCode.CANCEL
UPLOAD_RETRANSMISSION_OPCODE = OpCode.RETRANSMISSION

CHUNK_JOB_WORKER_POOL = 4
CHUNK_JOB_ERR_POOL = CHUNK_JOB_WORKER_POOL * 2
CHUNK_JOB_CONFIRMATION_POOL = CHUNK_JOB_ERR_POOL * 2

CHUNK_JOB_CONFIRMATION_WORKER_POOL = 1
CHUNK_JOB_ERR_WORKER_POOL = 1

CHUNK_JOB_CHANNEL_BUFFER_SIZE = 10