"""UTF-8 text and JSON file helpers."""

from __future__ import annotations

import json
import os
import tempfile
from io import TextIOWrapper
from pathlib import Path
from typing import Any

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict") -> str:
    """Read *path* as UTF-8 text."""
    return Path(path).read_text(encoding="utf-8", errors=errors)


def write_text(path: PathLike, text: str) -> None:
    """Write *text* to *path* as UTF-8."""
    Path(path).write_text(text, encoding="utf-8")


def open_text(path: PathLike, mode: str = "r", *, errors: str = "strict") -> TextIOWrapper:
    """Open *path* for text I/O with UTF-8 (append/write for log files)."""
    return open(Path(path), mode, encoding="utf-8", errors=errors)


def read_json(path: PathLike) -> Any:
    """Parse a JSON document. Raises ``json.JSONDecodeError`` / ``OSError``."""
    return json.loads(read_text(path))


def write_json(path: PathLike, data: Any) -> None:
    """Write *data* as indented JSON, replacing *path* atomically.

    Other processes reading the file never observe a half-written document.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", dir=p.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
        os.replace(tmp, p)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def append_line(path: PathLike, line: str) -> None:
    """Append a single line to *path*, creating parents as needed."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open_text(p, "a") as fh:
        fh.write(line.rstrip("\n") + "\n")
