"""Tests for storage backends."""

import errno
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from genoflow.storage.local import LocalStorageBackend


class TestLocalStorageBackend:
    """Tests for local storage backend."""

    def test_sanitize_filename(self):
        """Test filename sanitization."""
        # Test path traversal removal
        assert "../etc/passwd" not in LocalStorageBackend._sanitize_filename("../etc/passwd")
        assert "..\\" not in LocalStorageBackend._sanitize_filename("..\\windows\\system32")

        # Test directory separator replacement
        assert "/" not in LocalStorageBackend._sanitize_filename("path/to/file.txt")
        assert "\\" not in LocalStorageBackend._sanitize_filename("path\\to\\file.txt")

        # Test special character replacement
        result = LocalStorageBackend._sanitize_filename("file@#$.txt")
        assert "@" not in result
        assert "#" not in result
        assert "$" not in result

        # Test valid characters preserved
        assert LocalStorageBackend._sanitize_filename("valid-file_name.123.txt") == "valid-file_name.123.txt"

    def test_get_target_path(self, backend):
        """Test content-addressed target path generation."""
        path = backend.get_target_path("proj-1", "d41d8cd98f00b204e9800998ecf8427e", ".h5ad")

        assert path == backend.upload_root / "proj-1" / "d41d8cd98f00b204e9800998ecf8427e.h5ad"

    def test_get_target_path_without_extension(self, backend):
        path = backend.get_target_path("proj-1", "abc123", "")

        assert path.name == "abc123"

    def test_write_and_read_chunk(self, backend):
        """Test chunk staging round trip."""
        data = b"x" * 200_000

        chunk_path = backend.write_chunk("proj-1_user-7_sample.h5ad", 3, data)

        assert chunk_path == backend.staging_root / "proj-1_user-7_sample.h5ad" / "3"
        assert backend.chunk_exists("proj-1_user-7_sample.h5ad", 3)
        assert b"".join(backend.iter_chunk("proj-1_user-7_sample.h5ad", 3)) == data
        assert not any(p.name.endswith(".part") for p in chunk_path.parent.iterdir())

    def test_write_chunk_retries_transient_errors(self, backend):
        """Transient OS errors are retried; the chunk is written on a later attempt."""
        real_replace = os.replace
        calls = []

        def flaky_replace(src, dst):
            calls.append(dst)
            if len(calls) == 1:
                raise OSError(errno.EIO, "I/O error")
            return real_replace(src, dst)

        with patch("genoflow.storage.local.os.replace", side_effect=flaky_replace):
            backend.write_chunk("upload", 0, b"payload")

        assert len(calls) == 2
        assert backend.get_chunk_path("upload", 0).read_bytes() == b"payload"
        assert [p.name for p in backend.get_chunk_path("upload", 0).parent.iterdir()] == ["0"]

    def test_write_chunk_does_not_retry_permission_error(self, backend):
        calls = []

        def denied(src, dst):
            calls.append(dst)
            raise PermissionError(errno.EACCES, "denied")

        with patch("genoflow.storage.local.os.replace", side_effect=denied):
            with pytest.raises(PermissionError):
                backend.write_chunk("upload", 0, b"payload")

        assert len(calls) == 1

    def test_publish_refuses_existing_target(self, backend):
        temp = backend.create_temp_output("proj-1", "upload")
        temp.write_bytes(b"new")
        target = backend.get_target_path("proj-1", "digest", ".h5")
        target.write_bytes(b"old")

        assert backend.publish(temp, target) is False
        assert target.read_bytes() == b"old"
        assert temp.exists()

    def test_publish_moves_temp_file(self, backend):
        temp = backend.create_temp_output("proj-1", "upload")
        temp.write_bytes(b"content")
        target = backend.get_target_path("proj-1", "digest", ".h5")

        assert backend.publish(temp, target) is True
        assert target.read_bytes() == b"content"
        assert not temp.exists()

    def test_discard_and_remove_staging(self, backend):
        backend.write_chunk("upload", 0, b"a")
        temp = backend.create_temp_output("proj-1", "upload")
        temp.write_bytes(b"partial")

        backend.discard(temp)
        backend.discard(temp)
        backend.remove_staging("upload")
        backend.remove_staging("upload")

        assert not temp.exists()
        assert not (backend.staging_root / "upload").exists()

    def test_get_backend_name(self, tmp_path):
        """Test backend name."""
        backend = LocalStorageBackend(tmp_path / "u", tmp_path / "s")
        assert backend.get_backend_name() == "local"
        assert isinstance(backend.upload_root, Path)
