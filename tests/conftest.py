from __future__ import annotations

import asyncio
import json
import logging

import pytest
from aiohttp import WSCloseCode, web
from aiohttp.test_utils import TestServer

from livetail import ConnState, LogEntry, RenderSink, StreamConnectionError


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep saved hosts out of the real home directory."""
    monkeypatch.setenv('XDG_CONFIG_HOME', str(tmp_path / 'config'))
    yield tmp_path / 'config'


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for h in root.handlers:
        if h not in handlers:
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def make_entry(n: int, host: str = 'h1', service: str = 'sshd') -> LogEntry:
    return LogEntry(f'2024-05-01T10:00:{n:02d}Z', host, service, f'message {n}')


def entry_dict(entry: LogEntry) -> dict:
    return {name: getattr(entry, name) for name in LogEntry.FIELDS}


# Fake urwid event loop
class FakeEventLoop:
    """alarm/remove_alarm like urwid's event loops, driven by advance()."""

    def __init__(self):
        self.now     = 0.0
        self._seq    = 0
        self._alarms = []

    def alarm(self, seconds, callback):
        self._seq += 1
        handle = (self.now + seconds, self._seq, callback)
        self._alarms.append(handle)
        return handle

    def remove_alarm(self, handle) -> bool:
        try:
            self._alarms.remove(handle)
        except ValueError:
            return False
        return True

    @property
    def pending(self) -> int:
        return len(self._alarms)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = sorted(a for a in self._alarms if a[0] <= target)
            if not due:
                break
            when, _, callback = due[0]
            self._alarms.remove(due[0])
            self.now = max(self.now, when)
            callback()
        self.now = target


class FakeMainLoop:
    def __init__(self, widget=None):
        self.event_loop = FakeEventLoop()
        self.widget     = widget
        self.draws      = 0

    def set_alarm_in(self, sec, callback, user_data=None):
        return self.event_loop.alarm(sec, lambda: callback(self, user_data))

    def draw_screen(self) -> None:
        self.draws += 1


@pytest.fixture
def event_loop_fake() -> FakeEventLoop:
    return FakeEventLoop()


# Sink
class RecordingSink(RenderSink):
    """Sink with an explicit viewport: bottom is the last visible row."""

    def __init__(self):
        self.rows   = []
        self.events = []
        self.bottom = 0

    def append(self, entry):
        self.rows.append(entry)
        self.events.append(('append', entry))

    def clear(self):
        self.rows   = []
        self.bottom = 0
        self.events.append(('clear',))

    def scroll_metrics(self):
        return self.bottom, len(self.rows)

    def scroll_to_bottom(self):
        self.bottom = len(self.rows)
        self.events.append(('scroll',))


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


# Fake connections and fetcher
class FakeConnection:
    def __init__(self, host, url, on_open, on_payload, on_close, journal):
        self.host        = host
        self.url         = url
        self.state       = ConnState.CONNECTING
        self.task        = None
        self.on_open     = on_open
        self.on_payload  = on_payload
        self.on_close    = on_close
        self._journal    = journal

    @property
    def closed(self):
        return self.state in (ConnState.CLOSED, ConnState.ERROR_CLOSED)

    def open(self):
        self._journal.append(('open', self.host, str(self.url)))

    def close(self):
        if not self.closed:
            self._journal.append(('close', self.host, str(self.url)))
            self.state = ConnState.CLOSED

    # Test drivers
    def opened(self):
        self.state = ConnState.OPEN
        self.on_open(self)

    def receive(self, entry):
        data = entry if isinstance(entry, str) else json.dumps(entry_dict(entry))
        self.on_payload(self, data)

    def fail(self, reason='connection refused'):
        self.state = ConnState.ERROR_CLOSED
        self.on_close(self, StreamConnectionError(self.host, reason))


class ConnectionFactory:
    def __init__(self):
        self.journal     = []
        self.connections = []

    def __call__(self, host, url, on_open, on_payload, on_close):
        conn = FakeConnection(host, url, on_open, on_payload, on_close, self.journal)
        self.connections.append(conn)
        return conn

    def latest(self, host):
        return [c for c in self.connections if c.host == host][-1]


@pytest.fixture
def connections() -> ConnectionFactory:
    return ConnectionFactory()


class FakeFetcher:
    """Backlog per host; hosts listed in `gates` wait for their Event."""

    def __init__(self, backlogs=None, errors=None):
        self.backlogs = backlogs or {}
        self.errors   = errors or {}
        self.gates    = {}
        self.calls    = []

    async def fetch(self, host, filters):
        self.calls.append((host, filters))
        if host in self.gates:
            await self.gates[host].wait()
        if host in self.errors:
            raise self.errors[host]
        return list(self.backlogs.get(host, []))


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


async def settle(rounds: int = 5) -> None:
    # Let scheduled tasks run to completion.
    for _ in range(rounds):
        await asyncio.sleep(0)


# In-process agents
class FakeAgent:
    """aiohttp application serving /api/extract and /ws/live."""

    def __init__(self, name, backlog=(), live=(), status=200, body=None,
                 close_after_send=True):
        self.name              = name
        self.backlog           = [entry_dict(e) for e in backlog]
        self.live              = list(live)
        self.status            = status
        self.body              = body
        self.close_after_send  = close_after_send
        self.extract_queries   = []
        self.ws_queries        = []
        self.release           = asyncio.Event()

        self.app = web.Application()
        self.app.router.add_get('/api/extract', self.extract)
        self.app.router.add_get('/ws/live', self.live_ws)
        self.server = TestServer(self.app)

    @property
    def url(self) -> str:
        return str(self.server.make_url('/'))

    async def extract(self, request):
        self.extract_queries.append(dict(request.query))
        if self.status != 200:
            return web.Response(status=self.status, text='boom')
        if self.body is not None:
            return web.Response(text=self.body, content_type='application/json')
        return web.json_response(self.backlog)

    async def live_ws(self, request):
        self.ws_queries.append(dict(request.query))
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        for item in self.live:
            if isinstance(item, LogEntry):
                await ws.send_json(entry_dict(item))
            else:
                await ws.send_str(item)
        if self.close_after_send:
            await ws.close(code=WSCloseCode.GOING_AWAY)
            return ws

        # Keep reading so client closes are answered; release() closes from here.
        closer = asyncio.ensure_future(self._close_on_release(ws))
        async for _ in ws:
            pass
        closer.cancel()
        return ws

    async def _close_on_release(self, ws) -> None:
        await self.release.wait()
        await ws.close(code=WSCloseCode.GOING_AWAY)


@pytest.fixture
async def agents():
    started = []

    async def factory(name, **kwargs) -> FakeAgent:
        agent = FakeAgent(name, **kwargs)
        await agent.server.start_server()
        started.append(agent)
        return agent

    yield factory
    for agent in started:
        agent.release.set()
        await agent.server.close()
