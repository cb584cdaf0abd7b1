"""Unit tests for LocalArchiveStore.

No database or Docker required -- uses a temporary directory.
"""

from __future__ import annotations

import pytest

from warren.workspace_runtime.store.base import ArchiveStore, archive_key
from warren.workspace_runtime.store.local import LocalArchiveStore


@pytest.fixture
def store(tmp_path) -> LocalArchiveStore:
    return LocalArchiveStore(tmp_path)


def test_archive_key_layout() -> None:
    assert archive_key("p1", 1700000000123) == "workspaces/p1/1700000000123.tar.gz"


def test_satisfies_protocol(store: LocalArchiveStore) -> None:
    assert isinstance(store, ArchiveStore)


async def test_upload_and_iter(store: LocalArchiveStore, tmp_path) -> None:
    key = archive_key("p1", 1)
    location = await store.upload(key, iter([b"part one, ", b"part two"]))

    assert location == str((tmp_path / key).resolve())
    assert b"".join(store.iter_object(key)) == b"part one, part two"


async def test_upload_leaves_no_temp_files(store: LocalArchiveStore, tmp_path) -> None:
    key = archive_key("p1", 2)
    await store.upload(key, [b"data"])
    assert [p.name for p in (tmp_path / "workspaces" / "p1").iterdir()] == ["2.tar.gz"]


async def test_failed_upload_keeps_key_absent(store: LocalArchiveStore, tmp_path) -> None:
    def chunks():
        yield b"start"
        raise RuntimeError("export broke")

    key = archive_key("p1", 3)
    with pytest.raises(RuntimeError):
        await store.upload(key, chunks())
    assert await store.exists(key) is False
    assert list((tmp_path / "workspaces" / "p1").iterdir()) == []


def test_iter_missing_raises(store: LocalArchiveStore) -> None:
    iterator = store.iter_object("workspaces/none/1.tar.gz")
    with pytest.raises(FileNotFoundError):
        next(iterator)


async def test_exists_and_delete(store: LocalArchiveStore) -> None:
    key = archive_key("p1", 4)
    assert await store.exists(key) is False
    await store.upload(key, [b"x"])
    assert await store.exists(key) is True

    await store.delete(key)
    assert await store.exists(key) is False

    # Delete non-existent is a no-op.
    await store.delete(key)


def test_key_escaping_root_rejected(store: LocalArchiveStore) -> None:
    with pytest.raises(ValueError, match="escapes"):
        store.iter_object("../outside.tar.gz")
