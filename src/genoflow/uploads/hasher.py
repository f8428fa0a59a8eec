"""Content digest computed over the index-ordered byte stream of an upload.

Chunks reach the server in network arrival order. Hashing them in that
order yields a value that depends on timing rather than on the file, so two
uploads of the same file could produce different digests. The hasher here
only accepts chunks in strictly increasing index order; the merger feeds it
while it concatenates chunks 0..N-1, which makes the digest a true content
identifier of the merged file.
"""

import hashlib
from pathlib import Path

from genoflow.core.exceptions import IncompleteUpload

HASH_BLOCK_SIZE = 1024 * 1024


class IncrementalHasher:
    """Running digest over chunks fed in index order."""

    def __init__(self, algorithm: str = "md5"):
        self.algorithm = algorithm
        self._digest = hashlib.new(algorithm)
        self._next_index = 0
        self._final: str | None = None
        self.bytes_hashed = 0

    @property
    def chunks_hashed(self) -> int:
        return self._next_index

    def update(self, index: int, data: bytes) -> None:
        """Feed the next chunk, or the next block of the current chunk.

        A chunk may be fed in several blocks by repeating its index; moving
        to a new chunk requires exactly ``previous + 1``.

        Raises:
            IncompleteUpload: If ``index`` skips a chunk or goes backwards
            RuntimeError: If the digest was already finalized
        """
        if self._final is not None:
            raise RuntimeError("Digest already finalized")
        if index == self._next_index:
            self._next_index += 1
        elif index != self._next_index - 1 or self._next_index == 0:
            raise IncompleteUpload(
                f"Chunk {index} fed out of order; expected {self._next_index}"
            )
        self._digest.update(data)
        self.bytes_hashed += len(data)

    def hexdigest(self) -> str:
        """Finalize and return the digest. Repeated calls return the same value."""
        if self._final is None:
            self._final = self._digest.hexdigest()
        return self._final


def hash_bytes(data: bytes, algorithm: str = "md5") -> str:
    return hashlib.new(algorithm, data).hexdigest()


def hash_file(path: str | Path, algorithm: str = "md5") -> str:
    """Digest of a file on disk, read in blocks."""
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        while block := f.read(HASH_BLOCK_SIZE):
            digest.update(block)
    return digest.hexdigest()
