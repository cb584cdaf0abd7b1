"""Tests for the agent-facing workspace tools."""

from __future__ import annotations

from datetime import timedelta

import pytest

from warren.workspace_runtime.context import SessionContext, utcnow
from warren.workspace_runtime.edit import EditError
from warren.workspace_runtime.errors import ExecError
from warren.workspace_runtime.lifecycle import WorkspaceLifecycle
from warren.workspace_runtime.models.enums import TodoStatus, WorkspaceStatus
from warren.workspace_runtime.models.workspace import TodoItem
from warren.workspace_runtime.tools import WorkspaceTools, format_file_content


@pytest.fixture
async def tools(lifecycle: WorkspaceLifecycle, projects) -> WorkspaceTools:
    projects.seed("p1", user_id="u1")
    workspace = await lifecycle.get_or_create_workspace("p1")
    ctx = SessionContext(project_id="p1", user_id="u1", workspace=workspace)
    return WorkspaceTools(lifecycle, ctx, keep_alive_interval=0.01)


def test_format_file_content() -> None:
    assert format_file_content("a.txt", "one\ntwo") == "<a.txt>\n0001 | one\n0002 | two\n</a.txt>"


async def test_write_then_read(tools: WorkspaceTools, adapter) -> None:
    message = await tools.write_file("src/index.js", "let x = 1;\n")
    assert message == "File written successfully to src/index.js"
    assert adapter.containers["p1"]["src/index.js"] == "let x = 1;\n"

    assert await tools.read_raw("src/index.js") == "let x = 1;\n"
    assert await tools.read_file("src/index.js") == "<src/index.js>\n0001 | let x = 1;\n0002 | \n</src/index.js>"


async def test_write_passes_path_as_argument(tools: WorkspaceTools, adapter) -> None:
    await tools.write_file("weird $(name).txt", "x")
    argv = adapter.exec_calls[-1]
    assert argv[:2] == ["sh", "-c"]
    assert argv[-1] == "weird $(name).txt"
    assert "weird" not in argv[2]


async def test_read_missing_file(tools: WorkspaceTools) -> None:
    with pytest.raises(ExecError, match="No such file"):
        await tools.read_raw("missing.txt")


async def test_edit_file(tools: WorkspaceTools, adapter) -> None:
    adapter.containers["p1"]["app.py"] = "def main():\n    print('hi')\n"

    result = await tools.edit_file("app.py", "    print('hi')", "    print('hello')")

    assert result.replacements == 1
    assert adapter.containers["p1"]["app.py"] == "def main():\n    print('hello')\n"
    assert "+    print('hello')" in result.diff


async def test_edit_file_without_match_leaves_file(tools: WorkspaceTools, adapter) -> None:
    adapter.containers["p1"]["app.py"] = "x = 1\n"
    with pytest.raises(EditError):
        await tools.edit_file("app.py", "y = 2", "y = 3")
    assert adapter.containers["p1"]["app.py"] == "x = 1\n"


async def test_list_dir(tools: WorkspaceTools, adapter) -> None:
    adapter.containers["p1"].update({"b.txt": "", "a.txt": ""})
    assert await tools.list_dir(".", "-a") == "a.txt\nb.txt\n"
    assert adapter.exec_calls[-1] == ["ls", "-a", "--", "."]


async def test_terminal(tools: WorkspaceTools, projects) -> None:
    result = await tools.terminal("npm install")
    assert result.stdout == "ran npm install\n"
    assert result.exit_code == 0
    assert projects.records["p1"].last_heartbeat > utcnow() - timedelta(seconds=60)


async def test_terminal_after_reclaim_restores_workspace(tools: WorkspaceTools, lifecycle, adapter, projects) -> None:
    await lifecycle.archive_workspace("p1")
    assert (await projects.get("p1")).workspace_status == WorkspaceStatus.INACTIVE

    result = await tools.terminal("ls")

    assert result.exit_code == 0
    assert (await projects.get("p1")).workspace_status == WorkspaceStatus.ACTIVE
    assert tools.ctx.workspace is lifecycle.registry.get("p1")


async def test_todos_roundtrip(tools: WorkspaceTools) -> None:
    assert await tools.read_todos() == []
    todos = [TodoItem(description="write tests"), TodoItem(description="ship", status=TodoStatus.IN_PROGRESS)]

    assert await tools.write_todos(todos) == "Todo list updated with 2 items"
    assert await tools.read_todos() == todos


async def test_project_description_and_commands(tools: WorkspaceTools, projects) -> None:
    projects.records["p1"].last_heartbeat = utcnow() - timedelta(hours=1)

    await tools.describe_project("A todo app")
    message = await tools.declare_commands("npm run dev", "npm run build")

    assert tools.ctx.project_description == "A todo app"
    assert (tools.ctx.run_command, tools.ctx.build_command) == ("npm run dev", "npm run build")
    assert message == "Project served with run command npm run dev and build command npm run build"
    assert projects.records["p1"].last_heartbeat > utcnow() - timedelta(seconds=60)
