# File: r_lsp_shim/server/output.py

"""Output channel that collects server stderr, exit notices and log messages."""

import collections
import logging
from typing import Deque, List

DEFAULT_MAX_LINES = 5000


class OutputChannel:
    """A named, append-only log sink shared by language server sessions.

    Lines are kept in a bounded buffer and also emitted through the
    `r_lsp_shim.output.<name>` logger, so embedding applications can route
    them with ordinary logging configuration.

    Attributes:
        name (str): Display name of the channel.
        visible (bool): Whether `show()` has been called since creation.
        reveal_count (int): How many times the channel was revealed.
    """

    def __init__(self, name: str, max_lines: int = DEFAULT_MAX_LINES):
        self.name = name
        self.visible = False
        self.reveal_count = 0
        self._lines: Deque[str] = collections.deque(maxlen=max_lines)
        self._logger = logging.getLogger(
            f"r_lsp_shim.output.{name.replace(' ', '_').lower()}"
        )
        self._disposed = False

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def append_line(self, text: str) -> None:
        if self._disposed:
            self._logger.debug(f"Dropping line for disposed channel: {text}")
            return
        self._lines.append(text)
        self._logger.info(text)

    def show(self) -> None:
        """Asks the host to bring the channel to the user's attention."""
        self.visible = True
        self.reveal_count += 1
        self._logger.warning(f"Output channel '{self.name}' revealed.")

    def dispose(self) -> None:
        self._disposed = True
