# Per-test PASS/FAIL summary with duration and description, plus shared fakes.
import asyncio
import logging
import shutil
import tempfile

import pytest
from websockets.protocol import State

_CASE_META = {}
_RESULTS = []

_CLOSE = object()


def pytest_configure(config):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def pytest_runtest_setup(item):
    doc = (getattr(item.obj, "__doc__", "") or "").strip()
    _CASE_META[item.nodeid] = {"name": item.name, "doc": doc}


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()
    if rep.when == "call":
        _RESULTS.append(
            {
                "nodeid": item.nodeid,
                "name": item.name,
                "outcome": rep.outcome,  # passed/failed/skipped
                "duration_ms": rep.duration * 1000.0,
                "doc": _CASE_META.get(item.nodeid, {}).get("doc", ""),
            }
        )


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    term = terminalreporter
    term.write_sep("=", "Test Case Results")
    for r in _RESULTS:
        icon = {"passed": "PASS", "failed": "FAIL", "skipped": "SKIP"}[r["outcome"]]
        desc = f" - {r['doc']}" if r["doc"] else ""
        term.write_line(f"{icon:4} {r['name']} ({r['duration_ms']:.1f} ms){desc}")
    term.write_line("")
    counts = {k: len(terminalreporter.stats.get(k, [])) for k in ("passed", "failed", "skipped", "error")}
    term.write_sep("-", f"Summary: passed={counts.get('passed',0)} failed={counts.get('failed',0)} skipped={counts.get('skipped',0)} errors={counts.get('error',0)}")


# feed event in the upstream wire shape
def make_event(kind="commit", time_us=1, collection="app.bsky.feed.post", did="did:plc:test", **extra):
    ev = {"did": did, "time_us": time_us, "kind": kind}
    if kind == "commit":
        ev["commit"] = {
            "rev": f"rev{time_us}",
            "operation": "create",
            "collection": collection,
            "rkey": f"rkey{time_us}",
            "record": {"text": "hello"},
            "cid": "bafytest",
        }
    elif kind == "identity":
        ev["identity"] = {"did": did, "handle": "alice.test", "seq": time_us, "time": "2025-01-01T00:00:00Z"}
    elif kind == "account":
        ev["account"] = {"active": True, "did": did, "seq": time_us, "time": "2025-01-01T00:00:00Z"}
    ev.update(extra)
    return ev


class FakeWebSocket:
    """Scripted stand-in for a websockets client connection."""

    def __init__(self, messages=(), close_after=False):
        self._incoming = asyncio.Queue()
        for m in messages:
            self._incoming.put_nowait(m)
        if close_after:
            self._incoming.put_nowait(_CLOSE)
        self.state = State.OPEN
        self.closed = False

    def feed(self, message):
        self._incoming.put_nowait(message)

    def drop(self):
        # server side close
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        while True:
            msg = await self._incoming.get()
            if msg is _CLOSE:
                self.state = State.CLOSED
                return
            yield msg

    async def close(self):
        self.closed = True
        self.state = State.CLOSED
        self._incoming.put_nowait(_CLOSE)


class FakeConnect:
    """Replaces websockets.connect; hands out scripted sockets in order."""

    def __init__(self, sockets=(), failures=0):
        self.sockets = list(sockets)
        self.failures = failures
        self.urls = []
        self.opened = []

    async def __call__(self, url):
        self.urls.append(url)
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        ws = self.sockets.pop(0) if self.sockets else FakeWebSocket()
        self.opened.append(ws)
        return ws


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def temp_db_dir():
    d = tempfile.mkdtemp(prefix="relaytest_")
    try:
        yield d
    finally:
        shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def ws_factory():
    return FakeWebSocket


@pytest.fixture
def connect_factory():
    return FakeConnect


@pytest.fixture
def waiter():
    return wait_until
