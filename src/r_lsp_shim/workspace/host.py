# File: r_lsp_shim/workspace/host.py

"""In-process model of the editor host: documents, folders and their events.

An embedding editor bridge mirrors its own document and workspace-folder
state into a `Workspace` and fires the corresponding events; the lifecycle
controller only talks to this interface.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from r_lsp_shim.workspace.uri import DocumentUri, canonical_uri

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextDocument:
    """An open text document as reported by the editor."""

    uri: str
    language_id: str
    version: int = 0
    text: str = ""

    @property
    def parsed_uri(self) -> DocumentUri:
        return DocumentUri.parse(self.uri)


@dataclass(frozen=True)
class WorkspaceFolder:
    """A root folder of the editor workspace."""

    uri: str
    name: str = ""

    @property
    def fs_path(self) -> str:
        return DocumentUri.parse(self.uri).fs_path

    def to_lsp(self) -> Dict[str, str]:
        return {"uri": self.uri, "name": self.name or self.fs_path}


@dataclass(frozen=True)
class WorkspaceFoldersChangeEvent:
    added: Sequence[WorkspaceFolder] = field(default_factory=tuple)
    removed: Sequence[WorkspaceFolder] = field(default_factory=tuple)


Handler = Callable[[Any], Awaitable[None]]


class Disposable:
    """Undoes a registration when disposed."""

    def __init__(self, on_dispose: Callable[[], None]):
        self._on_dispose: Optional[Callable[[], None]] = on_dispose

    def dispose(self) -> None:
        if self._on_dispose is not None:
            self._on_dispose()
            self._on_dispose = None


class EventEmitter:
    """Delivers an event to async handlers in registration order."""

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Handler] = []

    def subscribe(self, handler: Handler) -> Disposable:
        self._handlers.append(handler)

        def _remove() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return Disposable(_remove)

    async def fire(self, event: Any) -> None:
        """Runs every handler concurrently.

        Each failure is logged; the first one is re-raised after all
        handlers have finished.
        """
        if not self._handlers:
            return
        results = await asyncio.gather(
            *(handler(event) for handler in list(self._handlers)),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            logger.error(
                f"Handler for '{self.name}' failed: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )
        if errors:
            raise errors[0]


class Workspace:
    """Tracks open documents and workspace folders and emits change events.

    Attributes:
        text_documents (List[TextDocument]): Documents currently open, in the
            order they were opened.
        workspace_folders (List[WorkspaceFolder]): Current workspace roots.
    """

    def __init__(self, folders: Optional[Sequence[WorkspaceFolder]] = None):
        self.text_documents: List[TextDocument] = []
        self.workspace_folders: List[WorkspaceFolder] = list(folders or [])
        self._did_open = EventEmitter("didOpenTextDocument")
        self._did_close = EventEmitter("didCloseTextDocument")
        self._did_change_folders = EventEmitter("didChangeWorkspaceFolders")

    def on_did_open_text_document(self, handler: Handler) -> Disposable:
        return self._did_open.subscribe(handler)

    def on_did_close_text_document(self, handler: Handler) -> Disposable:
        return self._did_close.subscribe(handler)

    def on_did_change_workspace_folders(self, handler: Handler) -> Disposable:
        return self._did_change_folders.subscribe(handler)

    def get_workspace_folder(self, uri: str) -> Optional[WorkspaceFolder]:
        """Returns the deepest workspace folder containing a `file` URI."""
        parsed = DocumentUri.parse(uri)
        if parsed.scheme != "file":
            return None
        path = parsed.fs_path
        best: Optional[WorkspaceFolder] = None
        best_len = -1
        for folder in self.workspace_folders:
            root = folder.fs_path.rstrip("/")
            if (path == root or path.startswith(root + "/")) and len(root) > best_len:
                best, best_len = folder, len(root)
        return best

    def find_document(self, uri: str) -> Optional[TextDocument]:
        key = canonical_uri(uri)
        for doc in self.text_documents:
            if canonical_uri(doc.uri) == key:
                return doc
        return None

    async def open_text_document(self, document: TextDocument) -> None:
        """Records the document as open and notifies subscribers."""
        if self.find_document(document.uri) is not None:
            logger.debug(f"Document already open: {document.uri}")
            return
        self.text_documents.append(document)
        await self._did_open.fire(document)

    async def close_text_document(self, uri: str) -> None:
        """Forgets the document, then notifies subscribers."""
        document = self.find_document(uri)
        if document is None:
            logger.debug(f"Close for unknown document ignored: {uri}")
            return
        self.text_documents.remove(document)
        await self._did_close.fire(document)

    async def change_workspace_folders(
        self,
        added: Sequence[WorkspaceFolder] = (),
        removed: Sequence[WorkspaceFolder] = (),
    ) -> None:
        removed_keys = {canonical_uri(f.uri) for f in removed}
        self.workspace_folders = [
            f for f in self.workspace_folders if canonical_uri(f.uri) not in removed_keys
        ] + list(added)
        await self._did_change_folders.fire(
            WorkspaceFoldersChangeEvent(added=tuple(added), removed=tuple(removed))
        )
