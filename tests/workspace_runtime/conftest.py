"""Shared fixtures for workspace-runtime tests.

Nothing here needs Docker or PostgreSQL.  The fakes play the other side of
each boundary:

- ``ScriptedSocket`` stands in for a hijacked exec socket.  It answers each
  command written to it with multiplexed frames, including the completion
  marker echo, the way bash would.
- ``FakeAdapter`` keeps each "container" as a dict of files and implements
  the adapter surface the lifecycle and archive pipeline use.  Its exports
  are real gzip streams, so archives go through the real stores.
- ``InMemoryProjectStore`` implements ``ProjectStore`` over a dict.
"""

from __future__ import annotations

import json
import queue
import re
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import anyio
import pytest

from warren.workspace_runtime.container.adapter import archived_image_name
from warren.workspace_runtime.container.demux import encode_frame
from warren.workspace_runtime.container.shell import ShellSession
from warren.workspace_runtime.container.streams import gzip_chunks
from warren.workspace_runtime.context import Workspace, utcnow
from warren.workspace_runtime.errors import WorkspaceExistsError, WorkspaceNotFoundError
from warren.workspace_runtime.lifecycle import ArchivePipeline, WorkspaceLifecycle
from warren.workspace_runtime.managers.projects import DuplicateProjectError
from warren.workspace_runtime.models.enums import StreamType, WorkspaceStatus
from warren.workspace_runtime.models.workspace import ExecResult, FileChange, FileEntry, ProjectRecord
from warren.workspace_runtime.registry import WorkspaceRegistry
from warren.workspace_runtime.store.local import LocalArchiveStore

TEST_IMAGE = "warren-test:latest"

_WRAPPED = re.compile(r"^(?P<command>.*)\necho (?P<marker>__WARREN_DONE_[0-9a-f]+__)\$\?\n$", re.DOTALL)

Handler = Callable[[str], "tuple[str, str, int] | None"]


def echo_handler(command: str) -> tuple[str, str, int]:
    return f"ran {command}\n", "", 0


# ---------------------------------------------------------------------------
# Exec socket
# ---------------------------------------------------------------------------


class ScriptedSocket:
    """Blocking socket double for one interactive shell.

    *handler* maps a command line to ``(stdout, stderr, exit_code)``; returning
    ``None`` means the shell never answers.  Responses are cut into
    *chunk_size* byte reads to exercise frame reassembly.  With *hang* unset,
    reading an empty queue is end-of-stream.
    """

    def __init__(
        self,
        handler: Handler | None = echo_handler,
        *,
        chunk_size: int | None = None,
        chunks: Iterable[bytes] = (),
        hang: bool = False,
    ) -> None:
        self.handler = handler
        self.chunk_size = chunk_size
        self.hang = hang
        self.sent: list[bytes] = []
        self.commands: list[str] = []
        self.closed = False
        self._queue: queue.Queue[bytes] = queue.Queue()
        for chunk in chunks:
            self._queue.put(chunk)

    def sendall(self, data: bytes) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(data)
        match = _WRAPPED.match(data.decode())
        if match is None or self.handler is None:
            return
        command = match.group("command")
        self.commands.append(command)
        response = self.handler(command)
        if response is None:
            return
        stdout, stderr, exit_code = response
        payload = b""
        if stderr:
            payload += encode_frame(StreamType.STDERR, stderr.encode())
        payload += encode_frame(StreamType.STDOUT, f"{stdout}{match.group('marker')}{exit_code}\n".encode())
        self.feed(payload)

    def feed(self, payload: bytes) -> None:
        size = self.chunk_size or len(payload) or 1
        for start in range(0, len(payload), size):
            self._queue.put(payload[start : start + size])

    def recv(self, size: int) -> bytes:
        if self.closed:
            raise OSError("socket closed")
        if self._queue.empty() and not self.hang:
            return b""
        try:
            return self._queue.get(timeout=1.0)
        except queue.Empty:
            return b""

    def shutdown(self, how: int) -> None:
        pass

    def close(self) -> None:
        self.closed = True


def make_shell(handler: Handler | None = echo_handler, **kwargs: Any) -> ShellSession:
    return ShellSession("exec-test", ScriptedSocket(handler, **kwargs))


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class FakeAdapter:
    """In-memory container runtime.  Containers are named after their project."""

    workspace_dir = "/workspace"

    def __init__(self, handler: Handler = echo_handler) -> None:
        self.handler = handler
        self.containers: dict[str, dict[str, str]] = {}
        self.images: dict[str, dict[str, str]] = {}
        self.created: list[str] = []
        self.removed: list[str] = []
        self.imported: list[str] = []
        self.changes: list[FileChange] = []
        self.failures: dict[str, Exception] = {}
        self.exec_calls: list[list[str]] = []

    def _maybe_fail(self, step: str) -> None:
        exc = self.failures.get(step)
        if exc is not None:
            raise exc

    @staticmethod
    def _project(ref: str) -> str:
        return ref.removeprefix("cid-")

    def _files(self, ref: str) -> dict[str, str]:
        try:
            return self.containers[self._project(ref)]
        except KeyError:
            raise WorkspaceNotFoundError("container", ref) from None

    def _workspace(self, project_id: str, image_name: str) -> Workspace:
        return Workspace(
            container_id=f"cid-{project_id}",
            project_id=project_id,
            image_name=image_name,
            shell=make_shell(self.handler),
        )

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    async def ensure_image(self, name: str) -> list[str]:
        self._maybe_fail("ensure_image")
        self.images.setdefault(name, {})
        return []

    async def create_workspace(self, project_id: str, image_name: str) -> Workspace:
        await anyio.sleep(0.01)
        self._maybe_fail("create")
        if project_id in self.containers:
            raise WorkspaceExistsError(project_id)
        self.containers[project_id] = dict(self.images.get(image_name, {}))
        self.created.append(project_id)
        return self._workspace(project_id, image_name)

    async def get_workspace(self, project_id: str) -> Workspace:
        if project_id not in self.containers:
            raise WorkspaceNotFoundError("container", project_id)
        return self._workspace(project_id, TEST_IMAGE)

    async def stop_and_remove(self, container_id: str) -> None:
        self._maybe_fail("remove")
        self.containers.pop(self._project(container_id), None)
        self.removed.append(self._project(container_id))

    async def open_shell(self, container_id: str) -> ShellSession:
        self._files(container_id)
        return make_shell(self.handler)

    async def execute(
        self,
        container_id: str,
        argv: list[str],
        *,
        stdin: bytes | None = None,
        workdir: str | None = None,
    ) -> ExecResult:
        files = self._files(container_id)
        self.exec_calls.append(argv)
        if argv[0] == "cat":
            path = argv[-1]
            if path not in files:
                return ExecResult(stderr=f"cat: {path}: No such file or directory\n", exit_code=1)
            return ExecResult(stdout=files[path], exit_code=0)
        if argv[:2] == ["sh", "-c"]:
            files[argv[-1]] = (stdin or b"").decode()
            return ExecResult(exit_code=0)
        if argv[0] == "ls":
            return ExecResult(stdout="".join(f"{name}\n" for name in sorted(files)), exit_code=0)
        return ExecResult(exit_code=0)

    async def list_files(self, container_id: str, path: str = "") -> list[FileEntry]:
        files = self._files(container_id)
        return [
            FileEntry(path=name, name=name.rsplit("/", 1)[-1], is_directory=False)
            for name in sorted(files)
            if name.startswith(path)
        ]

    async def watch_files(self, container_id: str) -> AsyncIterator[FileChange]:
        self._files(container_id)
        for change in self.changes:
            yield change
        await anyio.sleep_forever()

    @asynccontextmanager
    async def export_filesystem(self, container_id: str) -> AsyncIterator[Iterable[bytes]]:
        self._maybe_fail("export")
        files = self._files(container_id)
        yield gzip_chunks([json.dumps(files).encode()])

    @asynccontextmanager
    async def export_container(self, container_id: str) -> AsyncIterator[Iterable[bytes]]:
        self._maybe_fail("export")
        files = self._files(container_id)
        image = {"tag": archived_image_name(self._project(container_id)), "files": files}
        yield gzip_chunks([json.dumps(image).encode()])

    async def import_filesystem(self, container_id: str, chunks: Iterable[bytes]) -> None:
        self._maybe_fail("import")
        files = self._files(container_id)
        files.update(json.loads(b"".join(chunks)))
        self.imported.append(self._project(container_id))

    async def load_image(self, chunks: Iterable[bytes]) -> list[str]:
        self._maybe_fail("load_image")
        image = json.loads(b"".join(chunks))
        self.images[image["tag"]] = image["files"]
        return [image["tag"]]


# ---------------------------------------------------------------------------
# Project store
# ---------------------------------------------------------------------------


class InMemoryProjectStore:
    def __init__(self) -> None:
        self.records: dict[str, ProjectRecord] = {}

    def seed(
        self,
        project_id: str,
        user_id: str = "user-1",
        status: WorkspaceStatus = WorkspaceStatus.INACTIVE,
        *,
        storage_link: str | None = None,
        heartbeat_age: float | None = None,
    ) -> ProjectRecord:
        now = utcnow()
        record = ProjectRecord(
            project_id=project_id,
            user_id=user_id,
            workspace_status=status,
            storage_link=storage_link,
            last_heartbeat=None if heartbeat_age is None else now - timedelta(seconds=heartbeat_age),
            created_at=now,
            updated_at=now,
        )
        self.records[project_id] = record
        return record

    def _require(self, project_id: str) -> ProjectRecord:
        try:
            return self.records[project_id]
        except KeyError:
            raise WorkspaceNotFoundError("project", project_id) from None

    async def insert(
        self, project_id: str, user_id: str, status: WorkspaceStatus = WorkspaceStatus.INACTIVE
    ) -> ProjectRecord:
        if project_id in self.records:
            raise DuplicateProjectError(project_id)
        return self.seed(project_id, user_id, status).model_copy()

    async def get(self, project_id: str) -> ProjectRecord:
        return self._require(project_id).model_copy()

    async def update_status(
        self, project_id: str, status: WorkspaceStatus, *, expected: WorkspaceStatus | None = None
    ) -> bool:
        record = self._require(project_id)
        if expected is not None and record.workspace_status != expected:
            return False
        record.workspace_status = status
        record.updated_at = utcnow()
        return True

    async def update_heartbeat(self, project_id: str) -> None:
        self._require(project_id).last_heartbeat = utcnow()

    async def update_storage_link(self, project_id: str, key: str) -> None:
        self._require(project_id).storage_link = key

    async def find_stale(self, timeout: float) -> list[ProjectRecord]:
        cutoff = utcnow() - timedelta(seconds=timeout)
        return [
            record.model_copy()
            for record in self.records.values()
            if record.workspace_status == WorkspaceStatus.ACTIVE
            and record.last_heartbeat is not None
            and record.last_heartbeat < cutoff
        ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def shell_factory() -> Callable[..., ShellSession]:
    return make_shell


@pytest.fixture
def socket_factory() -> type[ScriptedSocket]:
    return ScriptedSocket


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def projects() -> InMemoryProjectStore:
    return InMemoryProjectStore()


@pytest.fixture
def archive_store(tmp_path) -> LocalArchiveStore:
    return LocalArchiveStore(tmp_path / "archives")


@pytest.fixture
def registry() -> WorkspaceRegistry:
    return WorkspaceRegistry()


@pytest.fixture
def pipeline(
    adapter: FakeAdapter,
    archive_store: LocalArchiveStore,
    projects: InMemoryProjectStore,
    registry: WorkspaceRegistry,
) -> ArchivePipeline:
    return ArchivePipeline(adapter, archive_store, projects, registry, image_name=TEST_IMAGE)


@pytest.fixture
def lifecycle(
    adapter: FakeAdapter,
    projects: InMemoryProjectStore,
    registry: WorkspaceRegistry,
    pipeline: ArchivePipeline,
) -> WorkspaceLifecycle:
    return WorkspaceLifecycle(adapter, projects, registry, pipeline, default_image=TEST_IMAGE)

