"""
Resumable chunked uploads.

Chunks arrive in any order over parallel connections, are staged per upload
and, once the last one lands, merged in index order into a content-addressed
file recorded as a file entity.
"""

from genoflow.uploads.chunk_store import ChunkStore, ChunkSubmission, UploadProgress
from genoflow.uploads.hasher import IncrementalHasher
from genoflow.uploads.merger import Merger
from genoflow.uploads.session import ChunkStatus, SessionKey, SessionRegistry, UploadSession

__all__ = [
    "ChunkStore",
    "ChunkSubmission",
    "UploadProgress",
    "IncrementalHasher",
    "Merger",
    "ChunkStatus",
    "SessionKey",
    "SessionRegistry",
    "UploadSession",
]
