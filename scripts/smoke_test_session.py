# File: scripts/smoke_test_session.py

"""Manual smoke test: start a real R language server for one R file.

Requires R with the `languageserver` package installed. Usage:

    python scripts/smoke_test_session.py path/to/script.R [--stdio]

The script opens the file outside any workspace folder, waits for the
server to initialize, prints the session state and output channel, then
deactivates.
"""

import argparse
import asyncio
import dataclasses
import logging
import pathlib
import sys

from r_lsp_shim.config.loader import get_lsp_settings
from r_lsp_shim.workspace.controller import LifecycleController
from r_lsp_shim.workspace.host import TextDocument, Workspace
from r_lsp_shim.workspace.uri import DocumentUri

logger = logging.getLogger(__name__)


async def main(path: pathlib.Path, use_stdio: bool) -> int:
    settings = get_lsp_settings()
    if use_stdio:
        settings = dataclasses.replace(settings, use_stdio=True)
    if settings.connect_timeout is None:
        settings = dataclasses.replace(settings, connect_timeout=60.0)

    workspace = Workspace()
    controller = LifecycleController(workspace, settings=settings)
    await controller.activate()

    document = TextDocument(
        uri=str(DocumentUri.file(str(path.resolve()))),
        language_id="r",
        text=path.read_text(encoding="utf-8"),
    )
    try:
        await workspace.open_text_document(document)
        session = controller.session_for_document(document)
        print(f"Session: {session!r}")
        if session is not None:
            print(f"Server capabilities: {sorted(session.client.server_capabilities)}")
    finally:
        await controller.deactivate()
        print("\n--- Output channel ---")
        print("\n".join(controller.output.lines) or "(empty)")
    return 0 if session is not None else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("path", type=pathlib.Path)
    parser.add_argument("--stdio", action="store_true", help="use the direct-pipe transport")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: [%(name)s] %(message)s")
    sys.exit(asyncio.run(main(args.path, args.stdio)))
