"""Gzipped tar snapshots of a tape store."""

from __future__ import annotations

import shutil
import sqlite3
import tarfile
import tempfile
from pathlib import Path

from .store import DB_FILENAME, StoreError, TapeStore


def create_snapshot(store: TapeStore, archive_path) -> None:
    """Write a consistent copy of ``store`` to ``archive_path`` as a .tar.gz archive."""
    archive = Path(archive_path)
    try:
        with tempfile.TemporaryDirectory(prefix="tapestore") as temp:
            checkpoint = Path(temp) / "checkpoint"
            checkpoint.mkdir()
            source_uri = store.db_file.resolve().as_uri() + "?mode=ro"
            source = sqlite3.connect(source_uri, uri=True)
            target = sqlite3.connect(checkpoint / DB_FILENAME)
            try:
                source.backup(target)
            finally:
                target.close()
                source.close()
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(checkpoint, arcname=".")
    except (OSError, sqlite3.Error, tarfile.TarError) as exc:
        raise StoreError(f"snapshot failed: {exc}") from exc


def _check_members(tar: tarfile.TarFile, destination: Path) -> None:
    root = destination.resolve()
    for member in tar.getmembers():
        target = (root / member.name).resolve()
        if target != root and root not in target.parents:
            raise StoreError(f"archive entry escapes destination: {member.name}")
        if member.issym() or member.islnk():
            raise StoreError(f"archive entry is a link: {member.name}")


def load_from_snapshot(archive_path, extract_to) -> TapeStore:
    """Replace ``extract_to`` with the contents of a snapshot and open it as a store."""
    destination = Path(extract_to)
    try:
        if destination.exists():
            shutil.rmtree(destination)
        destination.mkdir(parents=True)
        with tarfile.open(Path(archive_path), "r:gz") as tar:
            _check_members(tar, destination)
            if hasattr(tarfile, "data_filter"):
                tar.extractall(destination, filter="data")
            else:
                tar.extractall(destination)
    except (OSError, tarfile.TarError) as exc:
        raise StoreError(f"IO error: {exc}") from exc
    return TapeStore(destination)