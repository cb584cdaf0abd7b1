"""Docker adapter: typed, async operations over the container runtime.

docker-py is blocking, so every call is a small sync helper run through
``anyio.to_thread.run_sync``.  Runtime exceptions never leak out of this
module; they are translated into the ``WarrenError`` hierarchy.

Containers are named after their project id.  The runtime rejects duplicate
names, and that rejection is surfaced as ``WorkspaceExistsError`` rather
than papered over.
"""

from __future__ import annotations

import contextlib
import posixpath
import socket
from collections.abc import AsyncIterator, Iterable, Iterator
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any

import docker
from anyio import CancelScope, to_thread
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from loguru import logger

from warren.workspace_runtime.container.demux import FrameDemuxer, demultiplex
from warren.workspace_runtime.container.shell import READ_SIZE, ShellSession, raw_socket
from warren.workspace_runtime.container.streams import gzip_chunks
from warren.workspace_runtime.context import Workspace, utcnow
from warren.workspace_runtime.errors import (
    ArchiveError,
    BuildFailedError,
    ContainerCreateError,
    ExecError,
    RestoreError,
    WarrenError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
)
from warren.workspace_runtime.models.enums import ChangeKind, StreamType
from warren.workspace_runtime.models.workspace import ExecResult, FileChange, FileEntry

_IGNORED_DIRS = (".git", "node_modules")
_WATCH_EXCLUDE = r"(^|/)(\.git|node_modules)(/|$)"
_WATCH_EVENTS = "close_write,create,delete,moved_to,moved_from"

_EVENT_KINDS = {
    "CREATE": ChangeKind.CREATED,
    "MOVED_TO": ChangeKind.CREATED,
    "CLOSE_WRITE": ChangeKind.MODIFIED,
    "DELETE": ChangeKind.DELETED,
    "MOVED_FROM": ChangeKind.DELETED,
}


def archived_image_name(project_id: str) -> str:
    """Tag of the throwaway image committed for an image-mode archive."""
    return f"archived-{project_id}:latest"


def routing_labels(project_id: str, *, domain: str, port: int, network: str | None) -> dict[str, str]:
    """Reverse-proxy labels routing ``{project_id}.{domain}`` to the container's dev server."""
    labels = {
        "traefik.enable": "true",
        f"traefik.http.routers.{project_id}.rule": f"Host(`{project_id}.{domain}`)",
        f"traefik.http.routers.{project_id}.entrypoints": "web",
        f"traefik.http.services.{project_id}.loadbalancer.server.port": str(port),
    }
    if network:
        labels["traefik.docker.network"] = network
    return labels


def parse_watch_line(line: str, root: str) -> FileChange | None:
    """Parse one ``inotifywait --format '%e|%w%f'`` line.

    Returns ``None`` for lines that are not events we report.
    """
    events, sep, full_path = line.strip().partition("|")
    if not sep or not full_path:
        return None
    flags = events.split(",")
    kind = next((_EVENT_KINDS[flag] for flag in flags if flag in _EVENT_KINDS), None)
    if kind is None:
        return None
    path = posixpath.relpath(full_path, root) if full_path.startswith(root) else full_path
    return FileChange(path=path, kind=kind, is_directory="ISDIR" in flags)


def _parse_created(raw: str | None) -> datetime:
    if not raw:
        return utcnow()
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable container creation time: {}", raw)
        return utcnow()


class DockerAdapter:
    """Workspace-level operations over a ``docker.DockerClient``."""

    def __init__(
        self,
        client: docker.DockerClient,
        *,
        build_context: str | Path,
        workspace_dir: str = "/workspace",
        memory_limit_mb: int = 500,
        cpu_period: int = 100_000,
        cpu_quota: int = 50_000,
        route_domain: str = "localhost",
        route_port: int = 5173,
        network: str | None = "web",
        stop_timeout: int = 10,
    ) -> None:
        self._client = client
        self._build_context = Path(build_context)
        self.workspace_dir = workspace_dir.rstrip("/") or "/"
        self._memory_limit = f"{memory_limit_mb}m"
        self._cpu_period = cpu_period
        self._cpu_quota = cpu_quota
        self._route_domain = route_domain
        self._route_port = route_port
        self._network = network
        self._stop_timeout = stop_timeout

    @classmethod
    def from_settings(cls, settings: Any) -> DockerAdapter:
        if settings.docker_base_url:
            client = docker.DockerClient(base_url=settings.docker_base_url)
        else:
            client = docker.from_env()
        return cls(
            client,
            build_context=settings.image_build_context,
            workspace_dir=settings.workspace_dir,
            memory_limit_mb=settings.memory_limit_mb,
            cpu_period=settings.cpu_period,
            cpu_quota=settings.cpu_quota,
            route_domain=settings.route_domain,
            route_port=settings.route_port,
            network=settings.docker_network,
            stop_timeout=settings.stop_timeout,
        )

    async def close(self) -> None:
        await to_thread.run_sync(self._client.close)

    async def ping(self) -> bool:
        return await to_thread.run_sync(self._client.ping)

    # -- Image -----------------------------------------------------------------

    async def ensure_image(self, name: str) -> list[str]:
        """Build *name* from the build context unless it already exists.

        Returns the collected build log lines (empty if nothing was built).
        """
        return await to_thread.run_sync(partial(self._ensure_image, name))

    def _ensure_image(self, name: str) -> list[str]:
        try:
            self._client.images.get(name)
        except ImageNotFound:
            logger.info("Image {} not found, building from {}", name, self._build_context)
        except DockerException as exc:
            raise BuildFailedError(name, [], f"inspect failed: {exc}") from exc
        else:
            return []

        logs: list[str] = []
        try:
            for entry in self._client.api.build(path=str(self._build_context), tag=name, rm=True, decode=True):
                if "error" in entry:
                    raise BuildFailedError(name, logs, str(entry["error"]).strip())
                line = str(entry.get("stream", "")).rstrip()
                if line:
                    logs.append(line)
        except DockerException as exc:
            raise BuildFailedError(name, logs, str(exc)) from exc
        logger.info("Image {} built ({} log lines)", name, len(logs))
        return logs

    # -- Containers ------------------------------------------------------------

    async def create_workspace(self, project_id: str, image_name: str) -> Workspace:
        """Create and start the project's container, then attach a shell."""
        container = await to_thread.run_sync(partial(self._create_container, project_id, image_name))
        try:
            shell = await self.open_shell(container.id)
        except ExecError as exc:
            raise ContainerCreateError("create", f"Shell attach failed: {exc}", project_id=project_id) from exc
        logger.info("Workspace {} created (container={})", project_id, container.short_id)
        return Workspace(container_id=container.id, project_id=project_id, image_name=image_name, shell=shell)

    def _create_container(self, project_id: str, image_name: str) -> Any:
        try:
            return self._client.containers.run(
                image_name,
                command=["tail", "-f", "/dev/null"],
                name=project_id,
                detach=True,
                mem_limit=self._memory_limit,
                memswap_limit=self._memory_limit,
                cpu_period=self._cpu_period,
                cpu_quota=self._cpu_quota,
                labels=routing_labels(
                    project_id, domain=self._route_domain, port=self._route_port, network=self._network
                ),
            )
        except APIError as exc:
            if exc.status_code == 409:
                raise WorkspaceExistsError(project_id) from exc
            raise ContainerCreateError("create", str(exc), project_id=project_id) from exc
        except DockerException as exc:
            raise ContainerCreateError("create", str(exc), project_id=project_id) from exc

    async def get_workspace(self, project_id: str) -> Workspace:
        """Reattach to an existing container with a fresh shell.

        A stopped container is started first.  Raises ``WorkspaceNotFoundError``
        if no container exists for the project.
        """
        container = await to_thread.run_sync(partial(self._running_container, project_id))
        try:
            shell = await self.open_shell(container.id)
        except ExecError as exc:
            raise ContainerCreateError("attach", f"Shell attach failed: {exc}", project_id=project_id) from exc
        attrs = container.attrs
        return Workspace(
            container_id=container.id,
            project_id=project_id,
            image_name=attrs.get("Config", {}).get("Image", ""),
            shell=shell,
            created_at=_parse_created(attrs.get("Created")),
            status=container.status,
        )

    def _running_container(self, project_id: str) -> Any:
        try:
            container = self._client.containers.get(project_id)
            if container.status != "running":
                logger.info("Container {} is {}, starting it", project_id, container.status)
                container.start()
                container.reload()
        except NotFound as exc:
            raise WorkspaceNotFoundError("container", project_id) from exc
        except DockerException as exc:
            raise ContainerCreateError("attach", str(exc), project_id=project_id) from exc
        return container

    async def stop_and_remove(self, container_id: str) -> None:
        """Graceful stop bounded by the stop timeout, then forced removal.

        A container that is already gone counts as removed.
        """
        await to_thread.run_sync(partial(self._stop_and_remove, container_id))

    def _stop_and_remove(self, container_id: str) -> None:
        try:
            container = self._client.containers.get(container_id)
            container.stop(timeout=self._stop_timeout)
            container.remove(force=True)
        except NotFound:
            logger.warning("Container {} already removed", container_id)
        except DockerException as exc:
            raise ArchiveError("remove", str(exc), container_id=container_id) from exc
        else:
            logger.info("Container {} stopped and removed", container_id)

    # -- Exec ------------------------------------------------------------------

    async def open_shell(self, container_id: str) -> ShellSession:
        """Start ``/bin/bash`` in the workspace directory and hijack its stream."""
        exec_id, handle = await to_thread.run_sync(partial(self._open_shell, container_id))
        return ShellSession(exec_id, handle)

    def _open_shell(self, container_id: str) -> tuple[str, Any]:
        try:
            exec_id = self._client.api.exec_create(
                container_id,
                ["/bin/bash"],
                stdin=True,
                stdout=True,
                stderr=True,
                tty=False,
                workdir=self.workspace_dir,
            )["Id"]
            handle = self._client.api.exec_start(exec_id, socket=True, tty=False)
        except NotFound as exc:
            raise WorkspaceNotFoundError("container", container_id) from exc
        except DockerException as exc:
            raise ExecError("shell_open", str(exc), container_id=container_id) from exc
        return exec_id, handle

    async def execute(
        self,
        container_id: str,
        argv: list[str],
        *,
        stdin: bytes | None = None,
        workdir: str | None = None,
    ) -> ExecResult:
        """Run *argv* to completion and capture its output and exit code."""
        return await to_thread.run_sync(partial(self._execute, container_id, argv, stdin, workdir))

    def _execute(self, container_id: str, argv: list[str], stdin: bytes | None, workdir: str | None) -> ExecResult:
        try:
            exec_id = self._client.api.exec_create(
                container_id,
                argv,
                stdin=stdin is not None,
                stdout=True,
                stderr=True,
                tty=False,
                workdir=workdir or self.workspace_dir,
            )["Id"]
            handle = self._client.api.exec_start(exec_id, socket=True, tty=False)
            sock = raw_socket(handle)
            try:
                if stdin is not None:
                    sock.sendall(stdin)
                    sock.shutdown(socket.SHUT_WR)
                out, err = demultiplex(iter(partial(sock.recv, READ_SIZE), b""))
            finally:
                with contextlib.suppress(OSError):
                    sock.close()
            exit_code = self._client.api.exec_inspect(exec_id).get("ExitCode")
        except NotFound as exc:
            raise WorkspaceNotFoundError("container", container_id) from exc
        except (DockerException, OSError) as exc:
            raise ExecError("exec", str(exc), container_id=container_id, argv=argv) from exc
        return ExecResult(
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    # -- Files -----------------------------------------------------------------

    async def list_files(self, container_id: str, path: str = "") -> list[FileEntry]:
        """Recursive listing under the workspace directory, skipping VCS and dependency dirs."""
        root = posixpath.join(self.workspace_dir, path) if path else self.workspace_dir
        prune: list[str] = []
        for name in _IGNORED_DIRS:
            prune += [*(["-o"] if prune else []), "-name", name]
        argv = ["find", root, "-mindepth", "1", "(", *prune, ")", "-prune", "-o", "-printf", "%y %P\\n"]
        result = await self.execute(container_id, argv)
        if result.exit_code and not result.stdout:
            raise ExecError("list_files", result.stderr.strip() or "find failed", container_id=container_id)

        entries = []
        for line in result.stdout.splitlines():
            kind, _, rel = line.partition(" ")
            if not rel:
                continue
            entry_path = posixpath.join(path, rel) if path else rel
            entries.append(FileEntry(path=entry_path, name=posixpath.basename(rel), is_directory=kind == "d"))
        return entries

    async def watch_files(self, container_id: str) -> AsyncIterator[FileChange]:
        """Yield change notifications from a recursive watcher inside the container.

        The watcher runs until the consumer stops iterating.  Closing the
        generator closes the stream and kills the watcher process, whose pid
        is the first line it prints.
        """
        argv = [
            "sh",
            "-c",
            'echo "$$"; exec "$@"',
            "watch",
            "inotifywait",
            "-m",
            "-r",
            "-q",
            "-e",
            _WATCH_EVENTS,
            "--format",
            "%e|%w%f",
            "--exclude",
            _WATCH_EXCLUDE,
            self.workspace_dir,
        ]
        exec_id, handle = await to_thread.run_sync(partial(self._start_stream, container_id, argv))
        session = ShellSession(exec_id, handle)
        demuxer = FrameDemuxer()
        pending = ""
        pid: str | None = None
        try:
            while chunk := await session.recv():
                for stream, payload in demuxer.feed(chunk):
                    text = payload.decode("utf-8", errors="replace")
                    if stream == StreamType.STDERR:
                        logger.debug("Watcher {}: {}", container_id, text.strip())
                        continue
                    pending += text
                    *lines, pending = pending.split("\n")
                    for line in lines:
                        if pid is None and line.strip().isdigit():
                            pid = line.strip()
                            continue
                        change = parse_watch_line(line, self.workspace_dir)
                        if change is not None:
                            yield change
        finally:
            with CancelScope(shield=True):
                await session.close()
                if pid is not None:
                    await self._kill_watcher(container_id, pid)

    async def _kill_watcher(self, container_id: str, pid: str) -> None:
        try:
            await self.execute(container_id, ["sh", "-c", f"kill {pid}"])
        except WarrenError as exc:
            logger.warning("Failed to stop watcher {} in {}: {}", pid, container_id, exc)

    def _start_stream(self, container_id: str, argv: list[str]) -> tuple[str, Any]:
        try:
            exec_id = self._client.api.exec_create(container_id, argv, stdout=True, stderr=True, tty=False)["Id"]
            return exec_id, self._client.api.exec_start(exec_id, socket=True, tty=False)
        except NotFound as exc:
            raise WorkspaceNotFoundError("container", container_id) from exc
        except DockerException as exc:
            raise ExecError("watch", str(exc), container_id=container_id) from exc

    # -- Export / import -------------------------------------------------------

    @asynccontextmanager
    async def export_filesystem(self, container_id: str) -> AsyncIterator[Iterator[bytes]]:
        """Gzipped tar of the workspace directory, as a blocking chunk iterator.

        Consume the iterator in a worker thread, inside the ``async with``.
        """
        bits = await to_thread.run_sync(partial(self._get_archive, container_id))
        try:
            yield gzip_chunks(bits)
        finally:
            close = getattr(bits, "close", None)
            if close is not None:
                close()

    def _get_archive(self, container_id: str) -> Iterator[bytes]:
        try:
            bits, _stat = self._client.api.get_archive(container_id, self.workspace_dir)
        except NotFound as exc:
            raise WorkspaceNotFoundError("container", container_id) from exc
        except DockerException as exc:
            raise ArchiveError("export", str(exc), container_id=container_id) from exc
        return bits

    @asynccontextmanager
    async def export_container(self, container_id: str) -> AsyncIterator[Iterator[bytes]]:
        """Gzipped ``docker save`` of a throwaway commit of the container.

        The committed image is removed when the context exits, whether or not
        the stream was consumed; removal failure is only logged.
        """
        image_ref = await to_thread.run_sync(partial(self._commit, container_id))
        try:
            raw = await to_thread.run_sync(partial(self._client.api.get_image, image_ref))
            yield gzip_chunks(raw)
        except DockerException as exc:
            raise ArchiveError("export", str(exc), container_id=container_id) from exc
        finally:
            await to_thread.run_sync(partial(self._remove_image, image_ref))

    def _commit(self, container_id: str) -> str:
        try:
            container = self._client.containers.get(container_id)
            image_ref = archived_image_name(container.name.lstrip("/"))
            repository, _, tag = image_ref.partition(":")
            container.commit(repository=repository, tag=tag)
        except NotFound as exc:
            raise WorkspaceNotFoundError("container", container_id) from exc
        except DockerException as exc:
            raise ArchiveError("commit", str(exc), container_id=container_id) from exc
        logger.debug("Committed {} as {}", container_id, image_ref)
        return image_ref

    def _remove_image(self, image_ref: str) -> None:
        try:
            self._client.images.remove(image_ref, force=True)
        except DockerException:
            logger.warning("Failed to remove throwaway image {}", image_ref)

    async def import_filesystem(self, container_id: str, chunks: Iterable[bytes]) -> None:
        """Extract an uncompressed tar stream into ``/`` of the container."""
        await to_thread.run_sync(partial(self._put_archive, container_id, chunks))

    def _put_archive(self, container_id: str, chunks: Iterable[bytes]) -> None:
        try:
            ok = self._client.api.put_archive(container_id, "/", chunks)
        except NotFound as exc:
            raise WorkspaceNotFoundError("container", container_id) from exc
        except (DockerException, OSError) as exc:
            raise RestoreError("import", str(exc), container_id=container_id) from exc
        if not ok:
            raise RestoreError("import", "Runtime rejected the archive", container_id=container_id)

    async def load_image(self, chunks: Iterable[bytes]) -> list[str]:
        """Load an uncompressed image tar.  Returns the tags it carried."""
        return await to_thread.run_sync(partial(self._load_image, chunks))

    def _load_image(self, chunks: Iterable[bytes]) -> list[str]:
        try:
            images = self._client.images.load(chunks)
        except (DockerException, OSError) as exc:
            raise RestoreError("load_image", str(exc)) from exc
        return [tag for image in images for tag in image.tags]
