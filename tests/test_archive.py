import io
import zipfile
from pathlib import Path

import pytest

from deployment_agent.core.exceptions import ArtifactInvalidError
from deployment_agent.deploy.archive import (
    create_from_directory,
    is_zip_stream,
    read_comment,
    safe_extract,
)
from helpers import build_zip, read_tree


def test_extract_reproduces_packed_files(tmp_path: Path):
    files = {
        "service.exe": b"\x00\x01binary",
        "config/app.json": b'{"a": 1}',
        "deep/nested/dir/file.txt": b"hello",
    }
    dest = tmp_path / "out"

    written = safe_extract(io.BytesIO(build_zip(files)), dest)

    assert written == 3
    assert read_tree(dest) == files


def test_extract_creates_empty_directories(tmp_path: Path):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("logs/", b"")
        zf.writestr("app.exe", b"x")
    dest = tmp_path / "out"

    safe_extract(buffer, dest)

    assert (dest / "logs").is_dir()
    assert (dest / "app.exe").read_bytes() == b"x"


def test_zip_slip_detected(tmp_path: Path):
    stream = io.BytesIO(build_zip({"../evil.txt": b"oops"}))
    with pytest.raises(ArtifactInvalidError):
        safe_extract(stream, tmp_path / "out")
    assert not (tmp_path / "evil.txt").exists()


def test_corrupt_archive_rejected(tmp_path: Path):
    data = bytearray(build_zip({"a.txt": b"a" * 1000}))
    # Damage the local file data while keeping the central directory intact
    data[40:60] = b"\xff" * 20
    with pytest.raises(ArtifactInvalidError):
        safe_extract(io.BytesIO(bytes(data)), tmp_path / "out")


def test_is_zip_stream_restores_position():
    stream = io.BytesIO(build_zip({"a": b"1"}))
    assert is_zip_stream(stream)
    assert stream.tell() == 0
    assert not is_zip_stream(io.BytesIO(b"definitely not a zip"))


def test_create_from_directory_round_trip(tmp_path: Path):
    source = tmp_path / "src"
    (source / "sub").mkdir(parents=True)
    (source / "empty").mkdir()
    (source / "a.txt").write_text("a")
    (source / "sub" / "b.bin").write_bytes(b"\x00b")
    archive = tmp_path / "out.zip"

    create_from_directory(source, archive, comment="Backup_src_20240101000000")

    assert read_comment(archive) == "Backup_src_20240101000000"
    assert not (tmp_path / "out.zip.partial").exists()
    with zipfile.ZipFile(archive) as zf:
        names = set(zf.namelist())
    assert names == {"a.txt", "sub/b.bin", "empty/"}


def test_read_comment_of_non_zip_is_none(tmp_path: Path):
    path = tmp_path / "fake.zip"
    path.write_bytes(b"nope")
    assert read_comment(path) is None
