# File: r_lsp_shim/server/binary.py

"""Builds the command line and environment used to launch the R language server."""

import logging
import os
import shutil
from typing import Dict, List, Mapping, Optional

from r_lsp_shim.config.loader import LspSettings

logger = logging.getLogger(__name__)

FALLBACK_R_BINARY = "R"
DEFAULT_LANG = "en_US.UTF-8"
QUIET_FLAGS = ["--quiet", "--slave"]


def resolve_r_path(settings: LspSettings) -> str:
    """Returns the R executable to launch.

    An explicit `path` setting wins. Otherwise `R` is looked up on PATH. When
    nothing is found the bare name is returned, so a missing runtime shows up
    as a spawn failure in the output channel rather than as an error here.
    """
    if settings.path:
        return os.path.expanduser(settings.path)
    found = shutil.which(FALLBACK_R_BINARY)
    if found:
        return found
    logger.warning(
        f"R executable not found on PATH, falling back to '{FALLBACK_R_BINARY}'."
    )
    return FALLBACK_R_BINARY


def build_run_expression(port: Optional[int] = None, debug: bool = False) -> str:
    """Returns the R expression that starts `languageserver`.

    >>> build_run_expression(port=4242, debug=True)
    'languageserver::run(port=4242,debug=TRUE)'
    """
    run_args: List[str] = []
    if port is not None:
        run_args.append(f"port={port}")
    if debug:
        run_args.append("debug=TRUE")
    return f"languageserver::run({','.join(run_args)})"


def build_server_args(settings: LspSettings, port: Optional[int] = None) -> List[str]:
    """Returns the argument list (without the executable) for the server.

    Args:
        settings: Supplies the user's extra arguments and the debug flag.
        port: Loopback port the server must connect back to. None starts the
            server on its standard streams.
    """
    return (
        list(settings.args)
        + QUIET_FLAGS
        + ["-e", build_run_expression(port=port, debug=settings.debug)]
    )


def build_server_env(
    settings: LspSettings, base_env: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """Copies the host environment and applies the `LANG` override."""
    env = dict(os.environ if base_env is None else base_env)
    if settings.lang:
        env["LANG"] = settings.lang
    elif "LANG" not in env:
        env["LANG"] = DEFAULT_LANG
    if settings.debug:
        logger.info(f"LANG: {env['LANG']}")
    return env
