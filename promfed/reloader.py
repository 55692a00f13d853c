"""Trigger reloads of a Prometheus server when its configuration or rules change.

Environment variables referenced in the configuration as ``$(NAME)`` can be
substituted into a separate output file that the server reads instead.
"""

from __future__ import annotations

import contextlib
import hashlib
import ipaddress
import logging
import os
import posixpath
import queue
import re
import stat
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Iterator, Optional, Union

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from promfed.runutil import retry_with_log

__all__ = ["Reloader", "ReloaderError", "expand_env", "reload_url_from_base"]

_POLL_INTERVAL = 0.05
_WATCHED_EVENTS = frozenset({"modified", "created", "moved", "deleted"})

_ENV_RE = re.compile(r"\$\(([a-zA-Z_0-9]+)\)")
_ENV_RE_BYTES = re.compile(rb"\$\(([a-zA-Z_0-9]+)\)")


class ReloaderError(Exception):
    """Raised when configuration processing or a reload fails."""


def reload_url_from_base(url: str) -> str:
    """Return the standard Prometheus reload URL for a base URL."""
    parts = urllib.parse.urlsplit(url)
    joined = "/".join(p for p in (parts.path, "/-/reload") if p)
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return urllib.parse.urlunsplit(parts._replace(path=cleaned))


def expand_env(data: Union[str, bytes]) -> Union[str, bytes]:
    """Replace every ``$(NAME)`` with the value of environment variable NAME.

    Raises :class:`ReloaderError` for a reference to an unset variable.
    """
    binary = isinstance(data, (bytes, bytearray))
    pattern = _ENV_RE_BYTES if binary else _ENV_RE

    def substitute(match: re.Match) -> Union[str, bytes]:
        name = os.fsdecode(match.group(1)) if binary else match.group(1)
        value = os.environ.get(name)
        if value is None:
            raise ReloaderError(
                f'found reference to unset environment variable "{name}"'
            )
        return os.fsencode(value) if binary else value

    return pattern.sub(substitute, data)


def _hash_file(h: "hashlib._Hash", path: str) -> None:
    with open(path, "rb") as f:
        h.update(b"\xff")
        h.update(os.fsencode(path))
        h.update(b"\xff")
        for block in iter(lambda: f.read(64 * 1024), b""):
            h.update(block)


def _rule_files(path: str) -> Iterator[str]:
    """Yield regular files under ``path`` in lexical order.

    Symbolic links are followed for the file check but never descended into.
    """
    if stat.S_ISDIR(os.lstat(path).st_mode):
        for name in sorted(os.listdir(path)):
            yield from _rule_files(os.path.join(path, name))
    elif not stat.S_ISDIR(os.stat(path).st_mode):
        yield path


def _is_loopback(url: str) -> bool:
    host = urllib.parse.urlsplit(url).hostname or ""
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class _Deadline:
    """A stopper that fires when its parent fires or a timeout elapses."""

    def __init__(self, parent: threading.Event, timeout: float) -> None:
        self._parent = parent
        self._end = time.monotonic() + timeout

    def wait(self, timeout: Optional[float] = None) -> bool:
        remaining = self._end - time.monotonic()
        limit = remaining if timeout is None else min(timeout, remaining)
        if self._parent.wait(max(0.0, limit)):
            return True
        return time.monotonic() >= self._end


class _ConfigEventHandler(FileSystemEventHandler):
    def __init__(self, events: "queue.Queue[str]") -> None:
        super().__init__()
        self._events = events

    def on_any_event(self, event) -> None:
        if event.event_type not in _WATCHED_EVENTS:
            return
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if raw:
                self._events.put(os.path.abspath(os.fsdecode(raw)))


class Reloader:
    """Watches a config file and a rule directory and triggers reloads on change."""

    def __init__(
        self,
        reload_url: str,
        cfg_file: str = "",
        cfg_envsubst_file: str = "",
        rule_dir: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.reload_url = reload_url
        self.cfg_file = cfg_file
        self.cfg_envsubst_file = cfg_envsubst_file
        self.rule_dir = rule_dir
        self.logger = logger or logging.getLogger(__name__)
        self.rule_interval = 180.0
        self.retry_interval = 5.0
        self.last_cfg_hash = b""
        self.last_rule_hash = b""

    def watch(self, stop: threading.Event) -> None:
        """Process config and rule changes until ``stop`` is set.

        Raises :class:`ReloaderError` on a critical error.
        """
        events: "queue.Queue[str]" = queue.Queue()
        target = os.path.abspath(self.cfg_file) if self.cfg_file else None
        with contextlib.ExitStack() as stack:
            if self.cfg_file:
                stack.enter_context(self._watch_config(events))
                self.logger.info(
                    "started watching config file %s for changes (out: %s)",
                    self.cfg_file,
                    self.cfg_envsubst_file,
                )
                self.apply(stop)

            next_tick = time.monotonic() + self.rule_interval
            while not stop.is_set():
                now = time.monotonic()
                if now < next_tick:
                    try:
                        changed = events.get(timeout=min(_POLL_INTERVAL, next_tick - now))
                    except queue.Empty:
                        continue
                    if changed != target:
                        continue
                else:
                    next_tick += self.rule_interval
                    if next_tick <= now:
                        next_tick = now + self.rule_interval
                self.apply(stop)

    @contextlib.contextmanager
    def _watch_config(self, events: "queue.Queue[str]") -> Iterator[None]:
        path = os.path.abspath(self.cfg_file)
        observer = Observer()
        try:
            os.stat(path)
            observer.schedule(
                _ConfigEventHandler(events), os.path.dirname(path), recursive=False
            )
            observer.start()
        except OSError as exc:
            raise ReloaderError(f"add config file watch: {exc}") from exc
        try:
            yield
        finally:
            observer.stop()
            observer.join()

    def apply(self, stop: threading.Event) -> None:
        """Trigger a reload if the config or rules changed since the last one.

        The config is env-expanded into the output file first if one is set.
        Reloads are retried every ``retry_interval`` for at most ``rule_interval``.
        """
        cfg_hash = b""
        rule_hash = b""
        if self.cfg_file:
            h = hashlib.sha256()
            try:
                _hash_file(h, self.cfg_file)
            except OSError as exc:
                raise ReloaderError(f"hash file: {exc}") from exc
            cfg_hash = h.digest()
            if self.cfg_envsubst_file:
                self._write_expanded_config()

        if self.rule_dir:
            h = hashlib.sha256()
            try:
                for path in _rule_files(self.rule_dir):
                    _hash_file(h, path)
            except OSError as exc:
                raise ReloaderError(f"build hash: {exc}") from exc
            rule_hash = h.digest()

        if cfg_hash == self.last_cfg_hash and rule_hash == self.last_rule_hash:
            return

        def reload_and_record() -> None:
            try:
                self._trigger_reload()
            except ReloaderError as exc:
                raise ReloaderError(f"trigger reload: {exc}") from exc
            self.last_cfg_hash = cfg_hash
            self.last_rule_hash = rule_hash
            self.logger.info(
                "Prometheus reload triggered (cfg_in: %s, cfg_out: %s, rule_dir: %s)",
                self.cfg_file,
                self.cfg_envsubst_file,
                self.rule_dir,
            )

        try:
            retry_with_log(
                self.logger,
                self.retry_interval,
                _Deadline(stop, self.rule_interval),
                reload_and_record,
            )
        except ReloaderError as exc:
            self.logger.error("Failed to trigger reload. Retrying: %s", exc)

    def _write_expanded_config(self) -> None:
        try:
            with open(self.cfg_file, "rb") as f:
                content = f.read()
        except OSError as exc:
            raise ReloaderError(f"read file: {exc}") from exc
        try:
            expanded = expand_env(content)
        except ReloaderError as exc:
            raise ReloaderError(f"expand environment variables: {exc}") from exc
        try:
            with open(self.cfg_envsubst_file, "wb") as f:
                f.write(expanded)
        except OSError as exc:
            raise ReloaderError(f"write file: {exc}") from exc

    def _trigger_reload(self) -> None:
        request = urllib.request.Request(self.reload_url, data=b"", method="POST")
        if _is_loopback(self.reload_url):
            opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        else:
            opener = urllib.request.build_opener()
        try:
            with opener.open(request, timeout=self.rule_interval) as resp:
                status, reason = resp.status, resp.reason
        except urllib.error.HTTPError as exc:
            status, reason = exc.code, exc.reason
            exc.close()
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise ReloaderError(f"reload request failed: {exc}") from exc
        if status != 200:
            raise ReloaderError(f"received non-200 response: {status} {reason}")