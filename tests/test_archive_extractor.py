import shutil
import zipfile

import pytest

from hytalepanel.backend.handlers.archive_handler import ExtractionError, extract_archive


class TestExtractArchive:
    """Streaming zip extraction"""

    def test_directory_and_files_created_with_progress(self, tmp_path, make_zip):
        archive = make_zip(tmp_path / "server.zip", {
            "Server/": None,
            "Server/HytaleServer.jar": b"jar-bytes",
            "Assets.zip": b"assets",
        })
        dest = tmp_path / "out"
        reported = []

        count = extract_archive(archive, dest, progress_callback=reported.append)

        assert count == 3
        assert (dest / "Server").is_dir()
        assert (dest / "Server" / "HytaleServer.jar").read_bytes() == b"jar-bytes"
        assert (dest / "Assets.zip").read_bytes() == b"assets"
        assert reported == [33, 66, 100]

    def test_file_before_its_directory_entry(self, tmp_path, make_zip):
        archive = make_zip(tmp_path / "a.zip", {"deep/nested/file.txt": b"x"})
        dest = tmp_path / "out"

        extract_archive(archive, dest)

        assert (dest / "deep" / "nested" / "file.txt").read_bytes() == b"x"

    def test_empty_archive_reports_100_once(self, tmp_path, make_zip):
        archive = make_zip(tmp_path / "empty.zip", {})
        reported = []

        count = extract_archive(archive, tmp_path / "out", progress_callback=reported.append)

        assert count == 0
        assert reported == [100]

    def test_unreadable_archive(self, tmp_path):
        archive = tmp_path / "broken.zip"
        archive.write_bytes(b"this is not a zip file")

        with pytest.raises(ExtractionError, match="Cannot open archive"):
            extract_archive(archive, tmp_path / "out")

    def test_missing_archive(self, tmp_path):
        with pytest.raises(ExtractionError):
            extract_archive(tmp_path / "missing.zip", tmp_path / "out")

    def test_entry_escaping_destination_is_rejected(self, tmp_path):
        archive = tmp_path / "evil.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../escaped.txt", b"nope")
        dest = tmp_path / "out"

        with pytest.raises(ExtractionError, match="Failed to extract ../escaped.txt"):
            extract_archive(archive, dest)

        assert not (tmp_path / "escaped.txt").exists()

    def test_write_failure_names_the_entry(self, tmp_path, make_zip, mocker):
        archive = make_zip(tmp_path / "a.zip", {"first.txt": b"1", "second.txt": b"2"})
        dest = tmp_path / "out"
        real_copy = shutil.copyfileobj
        calls = []

        def failing_copy(src, dst, length=0):
            calls.append(dst)
            if len(calls) == 2:
                raise OSError("No space left on device")
            return real_copy(src, dst, length)

        mocker.patch("shutil.copyfileobj", side_effect=failing_copy)

        with pytest.raises(ExtractionError, match="Failed to extract second.txt: No space left on device"):
            extract_archive(archive, dest)

        # No rollback of entries already written
        assert (dest / "first.txt").read_bytes() == b"1"
