# File: r_lsp_shim/workspace/scope.py

"""Decides which language server session a document belongs to.

`resolve_scope` walks an ordered rule table; the first rule whose guard
holds decides the outcome:

1. unsupported URI scheme: not handled;
2. language other than R / R Markdown: not handled, except for a `file`
   outside every workspace folder, which is accepted whatever its language;
3. notebook cell: one session per notebook, started from its folder;
4. document inside a workspace folder: one session per folder;
5. untitled buffer: one session shared by all untitled buffers, started
   from the home directory;
6. any other `file`: one session per file, started from its folder.

The exception in rule 2 is long-standing behaviour kept for compatibility:
opening e.g. a `.txt` file outside the workspace starts a per-file server.
"""

import enum
import os
from dataclasses import dataclass
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from r_lsp_shim.workspace.host import TextDocument, WorkspaceFolder
from r_lsp_shim.workspace.uri import (
    FILE_SCHEME,
    NOTEBOOK_CELL_SCHEME,
    UNTITLED_SCHEME,
    DocumentUri,
    glob_match,
)

R_LANGUAGE_ID = "r"
RMD_LANGUAGE_ID = "rmd"
TARGET_LANGUAGE_IDS = (R_LANGUAGE_ID, RMD_LANGUAGE_ID)
SUPPORTED_SCHEMES = (FILE_SCHEME, UNTITLED_SCHEME, NOTEBOOK_CELL_SCHEME)

UNTITLED_KEY = "untitled"
NOTEBOOK_KEY_PREFIX = "vscode-notebook:"

FolderLookup = Callable[[str], Optional[WorkspaceFolder]]


@dataclass(frozen=True)
class DocumentFilter:
    """Claims documents by scheme, language id and path glob.

    Unset fields match anything.
    """

    scheme: Optional[str] = None
    language: Optional[str] = None
    pattern: Optional[str] = None

    def matches(self, uri: DocumentUri, language_id: str) -> bool:
        if self.scheme is not None and uri.scheme != self.scheme:
            return False
        if self.language is not None and language_id != self.language:
            return False
        return glob_match(uri.fs_path, self.pattern)

    def to_dict(self) -> Dict[str, str]:
        return {
            k: v
            for k, v in (
                ("scheme", self.scheme),
                ("language", self.language),
                ("pattern", self.pattern),
            )
            if v is not None
        }


class ScopeKind(enum.Enum):
    NOTEBOOK = "notebook"
    WORKSPACE = "workspace"
    UNTITLED = "untitled"
    FILE = "file"


@dataclass(frozen=True)
class ScopeDescriptor:
    """Everything needed to start the session serving one scope.

    Attributes:
        kind: Which rule produced the scope.
        key: Registry key; documents sharing a server share a key.
        document_selector: Filters of the documents the session claims.
        cwd: Working directory of the server process.
        workspace_folder: The enclosing folder, if any.
    """

    kind: ScopeKind
    key: str
    document_selector: Tuple[DocumentFilter, ...]
    cwd: str
    workspace_folder: Optional[WorkspaceFolder] = None

    def matches(self, document: TextDocument) -> bool:
        uri = document.parsed_uri
        return any(f.matches(uri, document.language_id) for f in self.document_selector)


class _ScopeQuery(NamedTuple):
    uri: DocumentUri
    language_id: str
    folder: Optional[WorkspaceFolder]
    home: str


def scope_key_for_uri(uri: DocumentUri) -> str:
    """Returns the key derived from a document URI alone.

    Used when a document closes: only untitled buffers, notebook cells and
    files outside the workspace map back to their own sessions this way.
    """
    if uri.scheme == UNTITLED_SCHEME:
        return UNTITLED_KEY
    if uri.scheme == NOTEBOOK_CELL_SCHEME:
        return f"{NOTEBOOK_KEY_PREFIX}{uri.fs_path}"
    return str(uri)


def scope_key_for_folder(folder: WorkspaceFolder) -> str:
    return str(DocumentUri.parse(folder.uri))


def _unsupported_scheme(q: _ScopeQuery) -> bool:
    return q.uri.scheme not in SUPPORTED_SCHEMES


def _foreign_language(q: _ScopeQuery) -> bool:
    if q.uri.scheme == FILE_SCHEME and q.folder is None:
        return False
    return q.language_id not in TARGET_LANGUAGE_IDS


def _is_notebook_cell(q: _ScopeQuery) -> bool:
    return q.uri.scheme == NOTEBOOK_CELL_SCHEME


def _in_workspace_folder(q: _ScopeQuery) -> bool:
    return q.folder is not None


def _is_untitled(q: _ScopeQuery) -> bool:
    return q.uri.scheme == UNTITLED_SCHEME


def _is_file(q: _ScopeQuery) -> bool:
    return q.uri.scheme == FILE_SCHEME


def _notebook_scope(q: _ScopeQuery) -> ScopeDescriptor:
    notebook_path = q.uri.fs_path
    return ScopeDescriptor(
        kind=ScopeKind.NOTEBOOK,
        key=scope_key_for_uri(q.uri),
        document_selector=(
            DocumentFilter(
                scheme=NOTEBOOK_CELL_SCHEME, language=R_LANGUAGE_ID, pattern=notebook_path
            ),
        ),
        cwd=q.uri.parent_dir,
        workspace_folder=q.folder,
    )


def _workspace_scope(q: _ScopeQuery) -> ScopeDescriptor:
    folder = q.folder
    folder_path = folder.fs_path.rstrip("/")
    pattern = f"{folder_path}/**/*"
    return ScopeDescriptor(
        kind=ScopeKind.WORKSPACE,
        key=scope_key_for_folder(folder),
        document_selector=(
            DocumentFilter(scheme=FILE_SCHEME, language=R_LANGUAGE_ID, pattern=pattern),
            DocumentFilter(scheme=FILE_SCHEME, language=RMD_LANGUAGE_ID, pattern=pattern),
        ),
        cwd=folder_path or "/",
        workspace_folder=folder,
    )


def _untitled_scope(q: _ScopeQuery) -> ScopeDescriptor:
    return ScopeDescriptor(
        kind=ScopeKind.UNTITLED,
        key=UNTITLED_KEY,
        document_selector=(
            DocumentFilter(scheme=UNTITLED_SCHEME, language=R_LANGUAGE_ID),
            DocumentFilter(scheme=UNTITLED_SCHEME, language=RMD_LANGUAGE_ID),
        ),
        cwd=q.home,
    )


def _stray_file_scope(q: _ScopeQuery) -> ScopeDescriptor:
    return ScopeDescriptor(
        kind=ScopeKind.FILE,
        key=scope_key_for_uri(q.uri),
        document_selector=(DocumentFilter(scheme=FILE_SCHEME, pattern=q.uri.fs_path),),
        cwd=q.uri.parent_dir,
    )


# (guard, builder); a None builder means the document is not handled.
_RULES: List[
    Tuple[Callable[[_ScopeQuery], bool], Optional[Callable[[_ScopeQuery], ScopeDescriptor]]]
] = [
    (_unsupported_scheme, None),
    (_foreign_language, None),
    (_is_notebook_cell, _notebook_scope),
    (_in_workspace_folder, _workspace_scope),
    (_is_untitled, _untitled_scope),
    (_is_file, _stray_file_scope),
]


def resolve_scope(
    document: TextDocument,
    get_workspace_folder: FolderLookup,
    home: Optional[str] = None,
) -> Optional[ScopeDescriptor]:
    """Computes the scope serving `document`, or None if it is not handled.

    Args:
        document: The document being opened.
        get_workspace_folder: Returns the workspace folder enclosing a URI.
        home: Working directory for untitled buffers; defaults to the user's
            home directory.
    """
    query = _ScopeQuery(
        uri=document.parsed_uri,
        language_id=document.language_id,
        folder=get_workspace_folder(document.uri),
        home=home if home is not None else os.path.expanduser("~"),
    )
    for guard, build in _RULES:
        if guard(query):
            return build(query) if build is not None else None
    return None
