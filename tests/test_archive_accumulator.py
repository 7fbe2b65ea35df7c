import zipfile

import pytest

from archivist.core.storage.archive_accumulator import ArchiveAccumulator


@pytest.fixture
def scratch(tmp_path):
    return tmp_path / "scratch" / "archive_build_test.zip"


class TestArchiveAccumulator:

    def test_creates_archive_and_parent_dir(self, scratch):
        with ArchiveAccumulator(scratch) as archive:
            assert archive.append("a.txt", b"a")
            assert archive.entry_count == 1

        with zipfile.ZipFile(scratch) as zf:
            assert zf.namelist() == ["a.txt"]
            assert zf.read("a.txt") == b"a"

    def test_duplicate_names_are_skipped(self, scratch):
        with ArchiveAccumulator(scratch) as archive:
            assert archive.append("a.txt", b"first")
            assert archive.append("a.txt", b"second") is False

        with zipfile.ZipFile(scratch) as zf:
            assert zf.namelist() == ["a.txt"]
            assert zf.read("a.txt") == b"first"

    def test_reopen_resumes_existing_entries(self, scratch):
        with ArchiveAccumulator(scratch) as archive:
            archive.append("a.txt", b"a")

        with ArchiveAccumulator(scratch) as archive:
            assert archive.has_entry("a.txt")
            assert archive.append("a.txt", b"again") is False
            archive.append("b.txt", b"b")

        assert ArchiveAccumulator.read_entry_names(scratch) == {"a.txt", "b.txt"}

    def test_unreadable_scratch_is_discarded(self, scratch):
        scratch.parent.mkdir(parents=True)
        scratch.write_bytes(b"PK\x03\x04 truncated garbage")

        with ArchiveAccumulator(scratch) as archive:
            assert archive.entry_count == 0
            archive.append("a.txt", b"a")

        assert ArchiveAccumulator.read_entry_names(scratch) == {"a.txt"}

    def test_read_entry_names_missing_file(self, scratch):
        assert ArchiveAccumulator.read_entry_names(scratch) is None

    def test_append_requires_open(self, scratch):
        with pytest.raises(RuntimeError):
            ArchiveAccumulator(scratch).append("a.txt", b"a")

    def test_discard(self, scratch):
        archive = ArchiveAccumulator(scratch).open()
        archive.append("a.txt", b"a")
        archive.discard()
        assert not scratch.exists()
