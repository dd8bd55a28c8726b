import io
import zipfile
import zlib
from datetime import datetime

import pytest

from tripbench.archive import build_zip_archive, crc32, dos_date_time

MOMENT = datetime(2026, 5, 1, 14, 35, 10)


class TestBuildZipArchive:
    def test_single_entry_opens_with_zipfile(self):
        archive = zipfile.ZipFile(io.BytesIO(build_zip_archive({"a.json": "{}"}, now=MOMENT)))
        assert archive.testzip() is None
        (info,) = archive.infolist()
        assert info.filename == "a.json"
        assert info.compress_type == zipfile.ZIP_STORED
        assert info.date_time == (2026, 5, 1, 14, 35, 10)
        assert archive.read("a.json") == b"{}"

    def test_multiple_entries_keep_order_and_bytes(self):
        files = [("manifest.json", '{"ok": true}'), ("logs/runs.ndjson", ""), ("notes/café.txt", "déjà vu")]
        archive = zipfile.ZipFile(io.BytesIO(build_zip_archive(files, now=MOMENT)))
        assert archive.namelist() == ["manifest.json", "logs/runs.ndjson", "notes/café.txt"]
        assert archive.read("logs/runs.ndjson") == b""
        assert archive.read("notes/café.txt").decode("utf-8") == "déjà vu"

    def test_binary_content(self):
        payload = bytes(range(256))
        archive = zipfile.ZipFile(io.BytesIO(build_zip_archive({"blob.bin": payload}, now=MOMENT)))
        assert archive.read("blob.bin") == payload

    def test_empty_archive(self):
        archive = zipfile.ZipFile(io.BytesIO(build_zip_archive([], now=MOMENT)))
        assert archive.namelist() == []


class TestPrimitives:
    @pytest.mark.parametrize("data", [b"", b"{}", b"The quick brown fox jumps over the lazy dog", bytes(range(256))])
    def test_crc32_matches_zlib(self, data):
        assert crc32(data) == zlib.crc32(data)

    def test_dos_year_is_clamped(self):
        early_date, _ = dos_date_time(datetime(1970, 1, 1))
        late_date, _ = dos_date_time(datetime(2200, 1, 1))
        assert early_date >> 9 == 0
        assert late_date >> 9 == 127

    def test_dos_seconds_have_two_second_resolution(self):
        _, time = dos_date_time(datetime(2026, 1, 1, 0, 0, 59))
        assert time & 0x1F == 29
