"""The shipper's record of block uploads, kept in the data directory.

The file ``thanos.shipper.json`` lists the IDs of the blocks that have
already been uploaded. It is only used to avoid repeated uploads.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any, Optional

from promfed.runutil import close_with_log_on_err

__all__ = [
    "META_FILENAME",
    "META_VERSION",
    "ShipperMeta",
    "read_meta_file",
    "write_meta_file",
]

META_FILENAME = "thanos.shipper.json"
META_VERSION = 1

_ULID_LENGTH = 26
_CROCKFORD = frozenset("0123456789ABCDEFGHJKMNPQRSTVWXYZ")


def _check_ulid(value: Any) -> str:
    """Return ``value`` as a canonical ULID string or raise ValueError."""
    if not isinstance(value, str):
        raise ValueError(f"block ID must be a string, got {value!r}")
    text = value.upper()
    if len(text) != _ULID_LENGTH:
        raise ValueError(f"bad ULID length in {value!r}")
    if not set(text) <= _CROCKFORD:
        raise ValueError(f"bad ULID character in {value!r}")
    if text[0] > "7":
        raise ValueError(f"ULID overflows 128 bits: {value!r}")
    return text


@dataclass
class ShipperMeta:
    """Contents of the shipper file: format version and uploaded block IDs."""

    version: int = META_VERSION
    uploaded: list[str] = field(default_factory=list)

    def to_json(self) -> str:
        """Serialise with tab indentation and a trailing newline."""
        body = {"version": self.version, "uploaded": list(self.uploaded)}
        return json.dumps(body, indent="\t") + "\n"

    @classmethod
    def from_json(cls, text: str) -> "ShipperMeta":
        """Parse and validate the file contents.

        Raises ValueError for malformed JSON, bad block IDs or an
        unsupported version.
        """
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("shipper meta file must hold a JSON object")
        version = data.get("version", 0)
        if not isinstance(version, int) or isinstance(version, bool):
            raise ValueError(f"invalid meta file version {version!r}")
        uploaded = data.get("uploaded") or []
        if not isinstance(uploaded, list):
            raise ValueError("'uploaded' must be a list of block IDs")
        ids = [_check_ulid(u) for u in uploaded]
        if version != META_VERSION:
            raise ValueError(f"unexpected meta file version {version}")
        return cls(version=version, uploaded=ids)


class _DirHandle:
    def __init__(self, fd: int) -> None:
        self.fd = fd

    def close(self) -> None:
        os.close(self.fd)


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.remove(path)


def _rename_file(src: str, dst: str, logger: Optional[logging.Logger]) -> None:
    _remove_all(dst)
    os.replace(src, dst)
    if os.name != "posix":
        return
    # Sync the parent directory so that the rename is persisted.
    handle = _DirHandle(os.open(os.path.dirname(dst) or ".", os.O_RDONLY))
    try:
        os.fsync(handle.fd)
    except OSError:
        close_with_log_on_err(logger, handle, "rename file dir close")
        raise
    handle.close()


def write_meta_file(
    directory: str | os.PathLike,
    meta: ShipperMeta,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Write ``meta`` to ``<directory>/thanos.shipper.json`` atomically."""
    path = os.path.join(os.fspath(directory), META_FILENAME)
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(meta.to_json())
    _rename_file(tmp, path, logger)


def read_meta_file(directory: str | os.PathLike) -> ShipperMeta:
    """Read ``<directory>/thanos.shipper.json``.

    Raises FileNotFoundError when the file is missing and ValueError when
    its contents are invalid.
    """
    path = os.path.join(os.fspath(directory), META_FILENAME)
    with open(path, encoding="utf-8") as f:
        text = f.read()
    return ShipperMeta.from_json(text)