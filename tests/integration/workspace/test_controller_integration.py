# tests/integration/workspace/test_controller_integration.py

"""End-to-end lifecycle tests with real server processes.

`LspSettings.path` points at the running Python interpreter and the first
extra argument at `tests/fixtures/fake_r_server.py`, so each session spawns
a genuine child process that connects back over loopback (or stdio).
"""

import asyncio
import pathlib
import sys

import pytest

from r_lsp_shim.config.loader import LspSettings
from r_lsp_shim.server.output import OutputChannel
from r_lsp_shim.server.session import SessionState
from r_lsp_shim.workspace.controller import LifecycleController
from r_lsp_shim.workspace.host import TextDocument, Workspace, WorkspaceFolder
from r_lsp_shim.workspace.uri import DocumentUri

FAKE_SERVER = str(pathlib.Path(__file__).resolve().parents[2] / "fixtures" / "fake_r_server.py")

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals assumed")


def _settings(*extra_args, **overrides):
    values = dict(
        path=sys.executable,
        args=[FAKE_SERVER, *extra_args],
        connect_timeout=15.0,
        initialize_timeout=15.0,
        shutdown_timeout=5.0,
    )
    values.update(overrides)
    return LspSettings(**values)


async def _wait_for(predicate, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


@pytest.fixture
def project(tmp_path):
    proj = tmp_path / "proj"
    proj.mkdir()
    (proj / "analysis.R").write_text("x <- 1\n", encoding="utf-8")
    return proj


def _folder(path):
    return WorkspaceFolder(uri=str(DocumentUri.file(str(path))), name=path.name)


def _doc(path, language_id="r"):
    return TextDocument(uri=str(DocumentUri.file(str(path))), language_id=language_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("use_stdio", [False, True])
async def test_workspace_session_round_trip(project, tmp_path, use_stdio):
    folder = _folder(project)
    workspace = Workspace(folders=[folder])
    output = OutputChannel("test")
    controller = LifecycleController(
        workspace, settings=_settings(use_stdio=use_stdio), output=output, home=str(tmp_path)
    )
    await controller.activate()

    doc = _doc(project / "analysis.R")
    await workspace.open_text_document(doc)
    session = controller.session_for_document(doc)

    assert session is not None
    assert session.state is SessionState.RUNNING
    assert session.client.server_capabilities == {"hoverProvider": True}
    assert await session.send_request("textDocument/hover", {}) == {"echo": "textDocument/hover"}
    process = session.transport.process

    await controller.deactivate()

    assert len(controller.registry) == 0
    assert process.returncode is not None
    assert session.state is SessionState.STOPPED
    assert any(line.endswith("exited with exit code 0") for line in output.lines)
    assert not output.visible


@pytest.mark.asyncio
async def test_crash_reveals_output_and_next_open_restarts(tmp_path):
    workspace = Workspace()
    output = OutputChannel("test")
    controller = LifecycleController(
        workspace, settings=_settings(), output=output, home=str(tmp_path)
    )
    await controller.activate()

    await workspace.open_text_document(TextDocument("untitled:Untitled-1", "r"))
    first = controller.registry.get("untitled")
    await first.send_notification("test/crash")

    await _wait_for(lambda: first.state is SessionState.STOPPED)
    assert output.visible
    assert any(line.endswith("exited with exit code 3") for line in output.lines)

    await workspace.open_text_document(TextDocument("untitled:Untitled-2", "r"))
    second = controller.registry.get("untitled")
    assert second is not first
    assert second.state is SessionState.RUNNING

    await controller.deactivate()
    assert second.state is SessionState.STOPPED


@pytest.mark.asyncio
async def test_closing_stray_file_terminates_its_server(tmp_path):
    script = tmp_path / "scratch.R"
    script.write_text("1 + 1\n", encoding="utf-8")
    workspace = Workspace()
    controller = LifecycleController(
        workspace, settings=_settings(), output=OutputChannel("test"), home=str(tmp_path)
    )
    await controller.activate()

    doc = _doc(script)
    await workspace.open_text_document(doc)
    session = controller.registry.get(str(DocumentUri.file(str(script))))
    assert session.cwd == str(tmp_path)
    process = session.transport.process

    await workspace.close_text_document(doc.uri)

    assert len(controller.registry) == 0
    assert process.returncode is not None
    await controller.deactivate()


@pytest.mark.asyncio
async def test_server_that_never_connects_times_out_and_releases_scope(tmp_path):
    workspace = Workspace()
    output = OutputChannel("test")
    controller = LifecycleController(
        workspace,
        settings=_settings("--no-connect", connect_timeout=1.0),
        output=output,
        home=str(tmp_path),
    )
    await controller.activate()

    with pytest.raises(asyncio.TimeoutError):
        await workspace.open_text_document(TextDocument("untitled:Untitled-1", "r"))

    assert len(controller.registry) == 0
    assert not controller.registry.is_initializing("untitled")
    assert any(line.endswith("exited with exit code 2") for line in output.lines)
    await controller.deactivate()
