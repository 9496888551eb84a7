"""Working directory reporting through OSC 7 (``ESC ] 7 ; file://host/path ST``)."""

from __future__ import annotations

import re
from urllib.parse import unquote, urlparse

_OSC7_RE = re.compile(r"\x1b\]7;(.*?)(?:\x1b\\|\x07)", re.DOTALL)


def get_cwd(chunk: bytes | str | None) -> str | None:
    """Return the path of the last OSC 7 sequence in ``chunk``, or None.

    The host part of the URL is ignored and the path is percent-decoded.
    Sequences whose URL is not a ``file`` URL are skipped.
    """
    if not chunk:
        return None
    text = chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk

    cwd = None
    for match in _OSC7_RE.finditer(text):
        url = urlparse(match.group(1))
        if url.scheme != "file" or not url.path:
            continue
        cwd = unquote(url.path)
    return cwd
