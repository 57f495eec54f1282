# File: r_lsp_shim/workspace/controller.py

"""Routes editor document and folder events to language server sessions.

The `LifecycleController` reacts to three host events:

- document opened: resolve the document's scope and, unless a session for
  that scope is already running or being started, create and start one;
- document closed: stop the session keyed by the document itself once no
  other document still needs it (untitled buffers share one session, notebook
  cells share their notebook's session);
- workspace folders removed: stop each removed folder's session.

`deactivate()` stops every remaining session and leaves the registry empty.
A start still in flight when it runs stops its session on completion
instead of storing it.

Known limitation: a close event that arrives while its session is still
starting finds nothing to stop. That session finishes starting and stays up
until a later close, folder removal or deactivation reclaims it.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from r_lsp_shim.config.loader import LspSettings, get_lsp_settings
from r_lsp_shim.server.output import OutputChannel
from r_lsp_shim.server.session import Session
from r_lsp_shim.server.transport import SERVER_LABEL
from r_lsp_shim.workspace.host import (
    Disposable,
    TextDocument,
    Workspace,
    WorkspaceFoldersChangeEvent,
)
from r_lsp_shim.workspace.registry import SessionRegistry
from r_lsp_shim.workspace.scope import (
    ScopeDescriptor,
    resolve_scope,
    scope_key_for_folder,
    scope_key_for_uri,
)
from r_lsp_shim.workspace.uri import NOTEBOOK_CELL_SCHEME, UNTITLED_SCHEME

logger = logging.getLogger(__name__)

SessionFactory = Callable[[ScopeDescriptor, LspSettings, OutputChannel], Session]


class LifecycleController:
    """Owns the sessions of one editor workspace.

    Attributes:
        workspace (Workspace): Source of documents, folders and events.
        settings (LspSettings): Settings passed to every new session.
        output (OutputChannel): Channel shared by all sessions.
        registry (SessionRegistry): Scope key to session mapping.
        home (Optional[str]): Working directory for untitled buffers; None
            means the user's home directory.
    """

    def __init__(
        self,
        workspace: Workspace,
        settings: Optional[LspSettings] = None,
        output: Optional[OutputChannel] = None,
        registry: Optional[SessionRegistry] = None,
        session_factory: SessionFactory = Session,
        home: Optional[str] = None,
    ):
        self.workspace = workspace
        self.settings = settings if settings is not None else get_lsp_settings()
        self.output = output if output is not None else OutputChannel(SERVER_LABEL)
        self.registry = registry if registry is not None else SessionRegistry()
        self.session_factory = session_factory
        self.home = home
        self._subscriptions: List[Disposable] = []
        self._deactivated = False

    async def activate(self) -> None:
        """Subscribes to host events and handles already open documents."""
        self._deactivated = False
        self._subscriptions.extend(
            [
                self.workspace.on_did_open_text_document(self.did_open_text_document),
                self.workspace.on_did_close_text_document(self.did_close_text_document),
                self.workspace.on_did_change_workspace_folders(
                    self.did_change_workspace_folders
                ),
            ]
        )
        already_open = list(self.workspace.text_documents)
        if not already_open:
            return
        results = await asyncio.gather(
            *(self.did_open_text_document(doc) for doc in already_open),
            return_exceptions=True,
        )
        for doc, result in zip(already_open, results):
            if isinstance(result, BaseException):
                logger.error(f"Could not start a language server for {doc.uri}: {result}")

    async def did_open_text_document(self, document: TextDocument) -> None:
        scope = resolve_scope(document, self.workspace.get_workspace_folder, self.home)
        if scope is None:
            return
        if not self.registry.claim(scope.key):
            return

        logger.info(f"Start language server for {document.uri}")
        try:
            session = self.session_factory(scope, self.settings, self.output)
            await session.start()
            if self._deactivated:
                logger.info(f"Deactivated while starting {scope.key}, stopping it.")
                await session.stop()
                return
            self.registry.store(scope.key, session)
        finally:
            self.registry.release(scope.key)

    async def did_close_text_document(self, document: TextDocument) -> None:
        uri = document.parsed_uri
        if uri.scheme == UNTITLED_SCHEME and self._other_open(
            document, lambda other: other.parsed_uri.scheme == UNTITLED_SCHEME
        ):
            return
        if uri.scheme == NOTEBOOK_CELL_SCHEME and self._other_open(
            document,
            lambda other: other.parsed_uri.scheme == NOTEBOOK_CELL_SCHEME
            and other.parsed_uri.fs_path == uri.fs_path,
        ):
            return
        await self._stop_scope(scope_key_for_uri(uri))

    async def did_change_workspace_folders(self, event: WorkspaceFoldersChangeEvent) -> None:
        for folder in event.removed:
            await self._stop_scope(scope_key_for_folder(folder))

    def _other_open(
        self, closed: TextDocument, predicate: Callable[[TextDocument], bool]
    ) -> bool:
        closed_uri = str(closed.parsed_uri)
        return any(
            predicate(doc)
            for doc in self.workspace.text_documents
            if str(doc.parsed_uri) != closed_uri
        )

    async def _stop_scope(self, key: str) -> None:
        session = self.registry.get(key)
        if session is None:
            return
        self.registry.pop(key)
        logger.info(f"Stop language server for scope {key}")
        await session.stop()

    def session_for_document(self, document: TextDocument) -> Optional[Session]:
        """Returns the running session whose selector claims the document."""
        for session in self.registry.sessions():
            if session.needs_stop() and session.matches(document):
                return session
        return None

    async def deactivate(self) -> None:
        """Unsubscribes from the host and stops every session."""
        self._deactivated = True
        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions.clear()
        await self.registry.stop_all()
        self.output.dispose()
