# File: r_lsp_shim/workspace/uri.py

"""Document URI parsing and the glob matching used by document filters."""

import functools
import posixpath
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, unquote, urlsplit, urlunsplit

FILE_SCHEME = "file"
UNTITLED_SCHEME = "untitled"
NOTEBOOK_CELL_SCHEME = "vscode-notebook-cell"

_DRIVE_PATH = re.compile(r"^/[A-Za-z]:")


@dataclass(frozen=True)
class DocumentUri:
    """A parsed document URI with its path stored percent-decoded.

    `str()` gives the canonical form: lower-case scheme and a path
    percent-encoded except for `/`. Two spellings of the same location
    therefore compare equal once parsed.
    """

    scheme: str
    authority: str = ""
    path: str = ""
    query: str = ""
    fragment: str = ""

    @classmethod
    def parse(cls, value: str) -> "DocumentUri":
        parts = urlsplit(value)
        return cls(
            scheme=parts.scheme.lower(),
            authority=parts.netloc,
            path=unquote(parts.path),
            query=parts.query,
            fragment=parts.fragment,
        )

    @classmethod
    def file(cls, fs_path: str) -> "DocumentUri":
        """Builds a `file` URI from an absolute POSIX path."""
        path = fs_path.replace("\\", "/")
        if not path.startswith("/"):
            path = "/" + path
        return cls(scheme=FILE_SCHEME, path=path)

    @property
    def fs_path(self) -> str:
        """The filesystem path this URI points at."""
        path = self.path
        if _DRIVE_PATH.match(path):
            path = path[1:]
        if self.authority and self.scheme == FILE_SCHEME:
            return f"//{self.authority}{path}"
        return path

    @property
    def parent_dir(self) -> str:
        return posixpath.dirname(self.fs_path)

    def __str__(self) -> str:
        return urlunsplit(
            (
                self.scheme,
                self.authority,
                quote(self.path, safe="/"),
                self.query,
                self.fragment,
            )
        )


def canonical_uri(value: str) -> str:
    """Returns the canonical string form of a URI string."""
    return str(DocumentUri.parse(value))


@functools.lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> "re.Pattern[str]":
    regex = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            regex.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            regex.append(".*")
            i += 2
        elif pattern[i] == "*":
            regex.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            regex.append("[^/]")
            i += 1
        else:
            regex.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(regex) + r"\Z")


def glob_match(path: str, pattern: Optional[str]) -> bool:
    """Matches a path against a glob where `**/` spans zero or more folders."""
    if pattern is None:
        return True
    return _compile_glob(pattern).match(path) is not None
