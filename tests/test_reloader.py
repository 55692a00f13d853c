import os
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from promfed.reloader import Reloader, ReloaderError, expand_env, reload_url_from_base

CONFIG_TEMPLATE = """
config:
  a: 1
  b: $(TEST_RELOADER_THANOS_ENV)
  c: $(TEST_RELOADER_THANOS_ENV2)
"""

CHANGED_TEMPLATE = """
config:
  a: changed
  b: $(TEST_RELOADER_THANOS_ENV)
  c: $(TEST_RELOADER_THANOS_ENV2)
"""


class _PromState:
    def __init__(self):
        self.lock = threading.Lock()
        self.requests = 0
        self.reloads_count = 0
        self.url = ""

    def reloads(self):
        with self.lock:
            return self.reloads_count


@pytest.fixture
def prom():
    state = _PromState()

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            with state.lock:
                state.requests += 1
                # Every second request fails to exercise retries.
                ok = state.requests % 2 == 1
                if ok:
                    state.reloads_count += 1
            self.send_response(200 if ok else 503)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    state.url = f"http://127.0.0.1:{server.server_address[1]}"
    yield state
    server.shutdown()
    server.server_close()
    thread.join()


def _atomic_write(path, text, scratch):
    tmp = os.path.join(scratch, "write.tmp")
    with open(tmp, "w") as f:
        f.write(text)
    os.replace(tmp, path)


def _watch_until(reloader, done, step=None, timeout=5.0):
    stop = threading.Event()

    def monitor():
        deadline = time.monotonic() + timeout
        while not stop.is_set() and time.monotonic() < deadline:
            if step is not None:
                step()
            if done():
                break
            time.sleep(0.02)
        stop.set()

    thread = threading.Thread(target=monitor, daemon=True)
    thread.start()
    try:
        reloader.watch(stop)
    finally:
        stop.set()
        thread.join()


@pytest.fixture
def cfg_paths(tmp_path):
    (tmp_path / "in").mkdir()
    (tmp_path / "out").mkdir()
    (tmp_path / "scratch").mkdir()
    return (
        str(tmp_path / "in" / "cfg.yaml.tmpl"),
        str(tmp_path / "out" / "cfg.yaml"),
        str(tmp_path / "scratch"),
    )


def test_watch_without_config_file(prom, cfg_paths):
    cfg_in, cfg_out, _ = cfg_paths
    reloader = Reloader(prom.url, cfg_in, cfg_out, "")
    reloader.retry_interval = 0.1
    with pytest.raises(ReloaderError, match="No such file or directory"):
        reloader.watch(threading.Event())


def test_watch_with_unset_variables(prom, cfg_paths, monkeypatch):
    cfg_in, cfg_out, _ = cfg_paths
    monkeypatch.delenv("TEST_RELOADER_THANOS_ENV", raising=False)
    monkeypatch.delenv("TEST_RELOADER_THANOS_ENV2", raising=False)
    with open(cfg_in, "w") as f:
        f.write(CONFIG_TEMPLATE)
    reloader = Reloader(prom.url, cfg_in, cfg_out, "")
    with pytest.raises(ReloaderError) as info:
        reloader.watch(threading.Event())
    assert str(info.value).endswith(
        'found reference to unset environment variable "TEST_RELOADER_THANOS_ENV"'
    )


def _initial_apply(prom, cfg_in, cfg_out, monkeypatch):
    monkeypatch.setenv("TEST_RELOADER_THANOS_ENV", "2")
    monkeypatch.setenv("TEST_RELOADER_THANOS_ENV2", "3")
    with open(cfg_in, "w") as f:
        f.write(CONFIG_TEMPLATE)
    reloader = Reloader(prom.url, cfg_in, cfg_out, "")
    reloader.retry_interval = 0.1
    _watch_until(reloader, lambda: prom.reloads() > 0)
    return reloader


def test_config_initial_apply(prom, cfg_paths, monkeypatch):
    cfg_in, cfg_out, _ = cfg_paths
    _initial_apply(prom, cfg_in, cfg_out, monkeypatch)
    assert prom.reloads() == 1
    with open(cfg_out) as f:
        assert f.read() == "\nconfig:\n  a: 1\n  b: 2\n  c: 3\n"


def test_config_on_change_apply(prom, cfg_paths, monkeypatch):
    cfg_in, cfg_out, scratch = cfg_paths
    reloader = _initial_apply(prom, cfg_in, cfg_out, monkeypatch)
    assert prom.reloads() == 1

    with prom.lock:
        prom.reloads_count = 0
    reloader.last_cfg_hash = b""
    reloader.last_rule_hash = b""
    reloader.rule_interval = 0.5

    written = []

    def step():
        if prom.reloads() == 1 and not written:
            _atomic_write(cfg_in, CHANGED_TEMPLATE, scratch)
            written.append(True)

    _watch_until(reloader, lambda: prom.reloads() > 1, step=step)
    assert prom.reloads() == 2
    with open(cfg_out) as f:
        assert f.read() == "\nconfig:\n  a: changed\n  b: 2\n  c: 3\n"


def test_rule_apply(prom, tmp_path):
    rule_dir = tmp_path / "rules"
    rule_dir.mkdir()
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    (rule_dir / "rule1.yaml").write_text("rule")

    reloader = Reloader(prom.url, "", "", str(rule_dir))
    reloader.rule_interval = 0.1
    reloader.retry_interval = 0.1

    done_steps = set()

    def step():
        count = prom.reloads()
        if count == 1 and "rule2" not in done_steps:
            _atomic_write(str(rule_dir / "rule2.yaml"), "rule2", str(scratch))
            done_steps.add("rule2")
        elif count == 2 and "rule1" not in done_steps:
            _atomic_write(str(rule_dir / "rule1.yaml"), "rule1-changed", str(scratch))
            done_steps.add("rule1")

    _watch_until(reloader, lambda: prom.reloads() > 2, step=step)
    assert prom.reloads() == 3


def test_apply_skips_unchanged_rules(prom, tmp_path):
    (tmp_path / "rule.yaml").write_text("rule")
    reloader = Reloader(prom.url, "", "", str(tmp_path))
    stop = threading.Event()
    reloader.apply(stop)
    reloader.apply(stop)
    assert prom.requests == 1
    assert prom.reloads() == 1


def test_apply_missing_rule_dir(prom, tmp_path):
    reloader = Reloader(prom.url, "", "", str(tmp_path / "missing"))
    with pytest.raises(ReloaderError, match="build hash"):
        reloader.apply(threading.Event())


def test_reload_url_from_base():
    assert reload_url_from_base("http://localhost:9090") == "http://localhost:9090/-/reload"
    assert reload_url_from_base("http://localhost:9090/prom/") == "http://localhost:9090/prom/-/reload"


def test_expand_env_bytes(monkeypatch):
    monkeypatch.setenv("TEST_RELOADER_THANOS_ENV", "2")
    assert expand_env(b"b: $(TEST_RELOADER_THANOS_ENV)") == b"b: 2"


def test_expand_env_leaves_other_forms(monkeypatch):
    monkeypatch.setenv("TEST_RELOADER_THANOS_ENV", "2")
    text = "x: ${TEST_RELOADER_THANOS_ENV} $TEST_RELOADER_THANOS_ENV $(TEST_RELOADER_THANOS_ENV)"
    assert expand_env(text) == "x: ${TEST_RELOADER_THANOS_ENV} $TEST_RELOADER_THANOS_ENV 2"


def test_expand_env_unset(monkeypatch):
    monkeypatch.delenv("TEST_RELOADER_THANOS_ENV2", raising=False)
    with pytest.raises(ReloaderError, match='"TEST_RELOADER_THANOS_ENV2"'):
        expand_env(b"c: $(TEST_RELOADER_THANOS_ENV2)")