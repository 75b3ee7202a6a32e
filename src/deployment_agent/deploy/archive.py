"""Zip helpers for artifact extraction and backup compression."""

from __future__ import annotations

import os
import shutil
import zipfile
import zlib
from pathlib import Path
from typing import BinaryIO, Optional

from deployment_agent.core.exceptions import ArtifactInvalidError


def is_zip_stream(stream: BinaryIO) -> bool:
    """Check whether a seekable stream holds a zip archive, restoring its position."""
    position = stream.tell()
    try:
        return zipfile.is_zipfile(stream)
    finally:
        stream.seek(position)


def safe_extract(stream: BinaryIO, dest_dir: Path) -> int:
    """Extract a zip stream into dest_dir, preventing zip-slip.

    Returns the number of files written. Raises ArtifactInvalidError on a
    corrupt archive or a member that would escape dest_dir.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    base = dest_dir.resolve()
    written = 0
    try:
        with zipfile.ZipFile(stream, "r") as zf:
            for member in zf.infolist():
                member_path = Path(member.filename)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ArtifactInvalidError("Zip contains unsafe paths (zip-slip)")
                target = (base / member_path).resolve()
                if target != base and base not in target.parents:
                    raise ArtifactInvalidError("Zip extraction escaped destination (zip-slip)")
                if member.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(member, "r") as src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)
                    written += 1
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError, NotImplementedError) as exc:
        raise ArtifactInvalidError(f"Artifact is not a valid zip archive: {exc}") from exc
    return written


def create_from_directory(source_dir: Path, archive_path: Path, comment: Optional[str] = None) -> Path:
    """Write source_dir's contents to archive_path.

    The archive is built under a temporary name and renamed into place so a
    reader never sees a half-written file.
    """
    tmp_path = archive_path.with_name(archive_path.name + ".partial")
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            if comment:
                zf.comment = comment.encode("utf-8")
            for root, dirs, files in os.walk(source_dir):
                root_path = Path(root)
                rel_root = root_path.relative_to(source_dir)
                if not files and not dirs and rel_root != Path("."):
                    zf.writestr(rel_root.as_posix() + "/", b"")
                for name in sorted(files):
                    file_path = root_path / name
                    zf.write(file_path, (rel_root / name).as_posix())
        os.replace(tmp_path, archive_path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise
    return archive_path


def read_comment(archive_path: Path) -> Optional[str]:
    """Return the stored comment of a zip archive, or None when unreadable."""
    try:
        with zipfile.ZipFile(archive_path, "r") as zf:
            comment = zf.comment
    except (OSError, zipfile.BadZipFile):
        return None
    return comment.decode("utf-8", errors="replace") if comment else None
