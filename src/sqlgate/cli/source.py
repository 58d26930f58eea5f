"""Where the SQL for ``query`` and ``validate`` comes from.

``-e`` text wins over a file argument, which wins over piped stdin.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import NamedTuple, TextIO

from sqlgate.core.exceptions import InputError


class SqlSource(NamedTuple):
    text: str
    origin: str  # "inline", "stdin" or the file path


def stdin_is_interactive(stream: TextIO | None = None) -> bool:
    stream = sys.stdin if stream is None else stream
    try:
        return stream.isatty()
    except (ValueError, AttributeError):
        # closed or replaced by an object without isatty()
        return False


def read_sql(inline: str | None, path: str | None, *, stdin: TextIO | None = None) -> SqlSource:
    """Return the statement text and its origin.

    Text is passed through untouched, blank or not; the classifier decides
    what to do with it. Raises InputError for an unreadable file or when
    nothing was given and stdin is a terminal.
    """
    if inline is not None:
        return SqlSource(inline, "inline")

    if path is not None:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            reason = e.strerror if isinstance(e, OSError) and e.strerror else str(e)
            raise InputError(f"Cannot read SQL file {path}: {reason}") from e
        return SqlSource(text, path)

    stream = sys.stdin if stdin is None else stdin
    if stdin_is_interactive(stream):
        raise InputError("No SQL given: use -e, a file path, or pipe it on stdin")
    return SqlSource(stream.read(), "stdin")
