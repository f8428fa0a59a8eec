"""Upload session state and the registry that owns it."""

import asyncio
import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, Optional

from genoflow.core.exceptions import InvalidChunkMetadata


class ChunkStatus(str, Enum):
    """Outcome of a chunk submission."""

    DUPLICATE = "duplicate"
    ACCEPTED = "accepted"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SessionKey:
    """Composite identity of one in-flight upload."""

    project_id: str
    user_id: str
    file_name: str

    @property
    def upload_id(self) -> str:
        """Filesystem-safe identifier naming the staging directory.

        The readable prefix is lossy, so it is followed by a digest of the
        exact key to keep distinct sessions apart.
        """
        raw = f"{self.project_id}_{self.user_id}_{self.file_name}"
        prefix = re.sub(r"[^a-zA-Z0-9._-]", "_", raw)[:150]
        exact = json.dumps([self.project_id, self.user_id, self.file_name], ensure_ascii=False)
        suffix = hashlib.sha256(exact.encode("utf-8")).hexdigest()[:32]
        return f"{prefix}-{suffix}"

    def __str__(self) -> str:
        return self.upload_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UploadSession:
    """Per-upload bookkeeping. Mutated only while holding ``lock``."""

    key: SessionKey
    total_chunks: int
    extension: str = ""
    received_bytes: int = 0
    merging: bool = False
    completed: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    bitmap: list[bool] = field(init=False)
    chunk_sizes: Dict[int, int] = field(default_factory=dict)
    chunk_digests: Dict[int, str] = field(default_factory=dict)
    writing: set[int] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self):
        if self.total_chunks < 1:
            raise InvalidChunkMetadata(f"Total chunk count must be >= 1, got {self.total_chunks}")
        self.bitmap = [False] * self.total_chunks

    @property
    def upload_id(self) -> str:
        return self.key.upload_id

    @property
    def received_chunks(self) -> int:
        return sum(self.bitmap)

    @property
    def is_complete(self) -> bool:
        return all(self.bitmap)

    @property
    def progress(self) -> int:
        return int(self.received_chunks * 100 / self.total_chunks)

    def missing_indices(self) -> list[int]:
        return [i for i, present in enumerate(self.bitmap) if not present]

    def mark_received(self, index: int, size: int, digest: str, now: datetime | None = None) -> None:
        self.bitmap[index] = True
        self.chunk_sizes[index] = size
        self.chunk_digests[index] = digest
        self.received_bytes += size
        self.updated_at = now or _utcnow()


def resolve_extension(file_name: str, extension: str | None = None) -> str:
    """Return the extension to publish under, with a leading dot.

    An explicit ``extension`` wins; otherwise the suffixes of ``file_name``
    are used so that ``sample.csv.gz`` keeps ``.csv.gz``.
    """
    if extension:
        extension = extension.strip()
        return extension if extension.startswith(".") else f".{extension}"
    suffixes = PurePosixPath(file_name).suffixes
    return "".join(suffixes[-2:]) if suffixes[-1:] == [".gz"] else "".join(suffixes[-1:])


class SessionRegistry:
    """Owns every in-flight upload session.

    The registry lock only guards the dictionary; each session carries its
    own lock for per-upload bookkeeping so uploads never contend with each
    other.
    """

    def __init__(self):
        self._sessions: Dict[SessionKey, UploadSession] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, key: SessionKey, total_chunks: int, extension: str = "") -> tuple[UploadSession, bool]:
        """Return the session for ``key``, creating it on first use.

        Raises:
            InvalidChunkMetadata: If an existing session expects a different total
        """
        async with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                if session.total_chunks != total_chunks:
                    raise InvalidChunkMetadata(
                        f"Upload {key.upload_id} expects {session.total_chunks} chunks, got total {total_chunks}"
                    )
                return session, False
            session = UploadSession(key=key, total_chunks=total_chunks, extension=extension)
            self._sessions[key] = session
            return session, True

    def get(self, key: SessionKey) -> Optional[UploadSession]:
        return self._sessions.get(key)

    async def remove(self, key: SessionKey) -> Optional[UploadSession]:
        async with self._lock:
            return self._sessions.pop(key, None)

    def stale_sessions(self, max_idle: timedelta, now: datetime | None = None) -> list[UploadSession]:
        """Sessions idle for longer than ``max_idle`` and not currently merging."""
        now = now or _utcnow()
        return [
            s for s in list(self._sessions.values())
            if not s.merging and now - s.updated_at > max_idle
        ]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._sessions
