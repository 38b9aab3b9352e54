#!/usr/bin/env python3
"""
livetail.py — Multi-host live log viewer for the terminal
Requires: urwid, aiohttp  →  pip install livetail

Usage:    livetail -e http://host1:8080 -e http://host2:8080
          livetail -e http://host1:8080,http://host2:8080 -s sshd,cron -k failed
          livetail                      (reuse the hosts of the previous run)

Every host is an agent exposing:
  GET /api/extract?services=<csv>&message_keywords=<text>   backlog (JSON array)
  GET /ws/live?services=<csv>&message_keywords=<text>       live WebSocket feed

Keys:
  /         focus the filter bar (services, keywords, LIVE toggle)
  Enter     return to log view
  Esc       return to log view
  l         toggle live mode
  r         restart the session (refetch backlog, reopen streams)
  c         clear the visible log
  h         edit the host list
  g / G     jump to top / bottom
  q         quit

New entries keep the view pinned to the bottom while it is at the bottom;
scroll up to read history undisturbed.
"""

import argparse
import asyncio
import enum
import json
import logging
import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path

import aiohttp
import urwid
from pythonjsonlogger import jsonlogger
from yarl import URL

logger = logging.getLogger('livetail')

# Palette
PALETTE = [
    # chrome
    ('header',    'white,bold',        'dark blue'),
    ('h_dim',     'light blue',        'dark blue'),
    ('tail_on',   'light green,bold',  'dark blue'),
    ('tail_part', 'yellow,bold',       'dark blue'),
    ('tail_down', 'light red,bold',    'dark blue'),
    ('tail_off',  'dark gray',         'dark blue'),
    ('footer',    'black',             'light gray'),
    ('fk',        'dark blue,bold',    'light gray'),
    ('ferr',      'dark red,bold',     'light gray'),
    # filter bar
    ('fl',        'dark cyan,bold',    'default'),
    ('fe',        'white',             'dark gray'),
    ('fe_f',      'white,bold',        'dark blue'),
    ('fc',        'light gray',        'default'),
    ('fc_f',      'black',             'light gray'),
    # host editor overlay
    ('sel_box',   'white',             'dark blue'),
    ('st',        'light gray',        'dark blue'),
    # log table
    ('col_hdr',   'yellow,bold',       'default'),
    ('c_ts',      'dark cyan',         'default'),
    ('c_host',    'light magenta',     'default'),
    ('c_svc',     'light green',       'default'),
    ('c_msg',     'light gray',        'default'),
    ('c_focus',   'black',             'light gray'),
    # scrollbar
    ('scrollbar_thumb', 'dark cyan',   'default'),
    ('scrollbar_trough','dark gray',   'default'),
]

BACKLOG_PATH    = '/api/extract'
STREAM_PATH     = '/ws/live'
ENDPOINT_PATHS  = {'backlog': BACKLOG_PATH, 'stream': STREAM_PATH}
STREAM_SCHEMES  = {'http': 'ws', 'https': 'wss'}

FILTER_DEBOUNCE = 0.25    # seconds of quiet before a filter edit restarts the session
FETCH_TIMEOUT   = 10.0    # backlog request timeout, seconds
STREAM_HEARTBEAT = 30.0   # WebSocket ping interval, seconds
DRAW_DELAY      = 0.05    # coalesce redraws triggered by network callbacks

HOSTS_FILE_NAME = 'hosts.json'

# Column widths of the log table (message takes the rest)
COL_TS   = 27
COL_HOST = 14
COL_SVC  = 18


# Errors
class LiveTailError(Exception):
    pass


class ConfigurationError(LiveTailError):
    # Malformed host string or empty host list.
    pass


class HostError(LiveTailError):
    # Failure tied to one host; never aborts the other hosts.
    def __init__(self, host: str, reason: str):
        super().__init__(f'{host}: {reason}')
        self.host   = host
        self.reason = reason


class BacklogFetchError(HostError):
    pass


class StreamConnectionError(HostError):
    pass


class MalformedEntryError(LiveTailError):
    pass


# Data model
@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    hostname:  str
    service:   str
    message:   str

    FIELDS = ('timestamp', 'hostname', 'service', 'message')

    @classmethod
    def from_dict(cls, obj) -> 'LogEntry':
        if not isinstance(obj, dict):
            raise MalformedEntryError(f'expected a JSON object, got {type(obj).__name__}')
        values = {}
        for name in cls.FIELDS:
            if name not in obj:
                raise MalformedEntryError(f'missing field {name!r}')
            if not isinstance(obj[name], str):
                raise MalformedEntryError(
                    f'field {name!r} must be a string, got {type(obj[name]).__name__}')
            values[name] = obj[name]
        return cls(**values)

    @classmethod
    def from_json(cls, payload) -> 'LogEntry':
        try:
            obj = json.loads(payload)
        except (TypeError, ValueError, RecursionError) as exc:
            raise MalformedEntryError(f'invalid JSON: {exc}') from exc
        return cls.from_dict(obj)


def strip_host(host: str) -> str:
    return host.strip().rstrip('/')


@dataclass(frozen=True)
class FilterState:
    """
    Target hosts plus the service/keyword filters of one session.

    hosts are base URLs without trailing slashes, in the order given,
    duplicates removed. services and message_keywords are passed to the
    agents as typed (comma-separated, possibly empty).
    """
    hosts:            tuple
    services:         str = ''
    message_keywords: str = ''

    @classmethod
    def create(cls, hosts, services: str = '', message_keywords: str = '') -> 'FilterState':
        cleaned = []
        for h in hosts:
            h = strip_host(h)
            if h and h not in cleaned:
                cleaned.append(h)
        if not cleaned:
            raise ConfigurationError('no hosts configured')
        return cls(tuple(cleaned), services, message_keywords)

    def with_filters(self, services: str, message_keywords: str) -> 'FilterState':
        return replace(self, services=services, message_keywords=message_keywords)

    def with_hosts(self, hosts) -> 'FilterState':
        return FilterState.create(hosts, self.services, self.message_keywords)


def parse_hosts(values) -> list:
    # Flatten repeated and comma-separated host options into one list.
    hosts = []
    for value in values or ():
        hosts.extend(h.strip() for h in value.split(',') if h.strip())
    return hosts


# Query builder
def build_url(host: str, kind: str, filters: FilterState) -> URL:
    """
    Endpoint of *kind* ('backlog' or 'stream') on *host* for *filters*.

    The stream URL uses the WebSocket variant of the host's scheme
    (http -> ws, https -> wss). Raises ConfigurationError when the host
    is not an absolute http(s) URL.
    """
    base = strip_host(host)
    try:
        url = URL(base + ENDPOINT_PATHS[kind])
        scheme, hostname = url.scheme, url.host
        url.port   # raises ValueError for a malformed port
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f'malformed host {host!r}: {exc}') from exc
    if scheme not in STREAM_SCHEMES or not hostname:
        raise ConfigurationError(
            f'malformed host {host!r}: expected http(s)://name[:port]')
    if kind == 'stream':
        url = url.with_scheme(STREAM_SCHEMES[scheme])

    query = {}
    if filters.services:
        query['services'] = filters.services
    if filters.message_keywords:
        query['message_keywords'] = filters.message_keywords
    return url.with_query(query) if query else url


# Backlog
class BacklogFetcher:
    """
    One-shot GET of a host's backlog.
    Network, HTTP and decoding failures surface as BacklogFetchError.
    Individual malformed entries are skipped (logged), the rest are kept.
    """

    def __init__(self, client: aiohttp.ClientSession, timeout: float = FETCH_TIMEOUT):
        self._client  = client
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def fetch(self, host: str, filters: FilterState) -> list:
        url = build_url(host, 'backlog', filters)
        logger.debug('fetching backlog %s', url)
        try:
            async with self._client.get(url, timeout=self._timeout) as resp:
                resp.raise_for_status()
                body = await resp.json(content_type=None)
        except aiohttp.ClientResponseError as exc:
            raise BacklogFetchError(host, f'HTTP {exc.status} {exc.message}') from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise BacklogFetchError(host, str(exc) or type(exc).__name__) from exc
        except (ValueError, RecursionError) as exc:
            raise BacklogFetchError(host, f'invalid JSON body: {exc}') from exc

        if not isinstance(body, list):
            raise BacklogFetchError(host, f'expected a JSON array, got {type(body).__name__}')

        entries = []
        for item in body:
            try:
                entries.append(LogEntry.from_dict(item))
            except MalformedEntryError as exc:
                logger.warning('skipping malformed backlog entry from %s: %s', host, exc)
        return entries


# Debounce
class Debouncer:
    """
    Collapse a burst of calls into one call of *action*, *wait* seconds
    after the last of them, with the last call's arguments.

    event_loop is an urwid event loop (anything with alarm/remove_alarm).
    Each call replaces the pending alarm; there is no separate cancel.
    """

    def __init__(self, event_loop, wait: float, action):
        self._event_loop = event_loop
        self.wait        = max(0.0, wait)
        self._action     = action
        self._handle     = None
        self._args       = ((), {})

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def __call__(self, *args, **kwargs) -> None:
        if self._handle is not None:
            self._event_loop.remove_alarm(self._handle)
        self._args   = (args, kwargs)
        self._handle = self._event_loop.alarm(self.wait, self._fire)

    def _fire(self) -> None:
        self._handle = None
        args, kwargs = self._args
        self._args   = ((), {})
        self._action(*args, **kwargs)


# Streaming connection
class ConnState(enum.Enum):
    CONNECTING   = 'connecting'
    OPEN         = 'open'
    CLOSED       = 'closed'
    ERROR_CLOSED = 'error-closed'


class Connection:
    """
    One WebSocket subscription to a host's live feed.

    Callbacks run on the event loop thread:
      on_open(conn)
      on_payload(conn, data)    -- one text frame, unparsed
      on_close(conn, error)     -- error is a StreamConnectionError

    close() is idempotent and no callback fires after it returns.
    An exception escaping on_open or on_payload ends the stream in
    ERROR_CLOSED (on_close still fires) and is re-raised from the task.
    """

    def __init__(self, host: str, url: URL, client: aiohttp.ClientSession,
                 on_open, on_payload, on_close,
                 heartbeat: float = STREAM_HEARTBEAT):
        self.host        = host
        self.url         = url
        self.state       = ConnState.CONNECTING
        self.task        = None
        self._client     = client
        self._on_open    = on_open
        self._on_payload = on_payload
        self._on_close   = on_close
        self._heartbeat  = heartbeat

    @property
    def closed(self) -> bool:
        return self.state in (ConnState.CLOSED, ConnState.ERROR_CLOSED)

    def open(self) -> None:
        if self.task is not None or self.closed:
            return
        self.task = asyncio.get_running_loop().create_task(
            self._run(), name=f'stream {self.host}')

    def close(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        if not self.closed:
            self.state = ConnState.CLOSED

    async def _run(self) -> None:
        try:
            async with self._client.ws_connect(self.url, heartbeat=self._heartbeat) as ws:
                self.state = ConnState.OPEN
                self._on_open(self)
                async for msg in ws:
                    if self.closed:
                        return
                    if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                        self._on_payload(self, msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        raise StreamConnectionError(self.host, f'transport error: {ws.exception()}')
                reason = f'closed by remote (code {ws.close_code})'
        except StreamConnectionError as exc:
            self._finish(ConnState.ERROR_CLOSED, exc)
            return
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            self._finish(ConnState.ERROR_CLOSED,
                         StreamConnectionError(self.host, str(exc) or type(exc).__name__))
            return
        except Exception as exc:
            # A failing callback still ends the stream; the task logs the traceback.
            self._finish(ConnState.ERROR_CLOSED,
                         StreamConnectionError(self.host, f'{type(exc).__name__}: {exc}'))
            raise
        self._finish(ConnState.CLOSED, StreamConnectionError(self.host, reason))

    def _finish(self, state: ConnState, error: StreamConnectionError) -> None:
        if self.closed:
            return
        self.state = state
        self._on_close(self, error)


# Render sink
class RenderSink:
    """
    Where entries end up. scroll_metrics() returns
    (viewport_bottom, content_height); equal values mean "at bottom".
    """
    def append(self, entry: LogEntry) -> None:      raise NotImplementedError
    def clear(self) -> None:                        raise NotImplementedError
    def scroll_metrics(self) -> tuple:              raise NotImplementedError
    def scroll_to_bottom(self) -> None:             raise NotImplementedError


def append_entry(sink: RenderSink, entry: LogEntry, follow: bool = True) -> None:
    # Append unconditionally; keep the view pinned only if it was at the bottom.
    at_bottom = False
    if follow:
        bottom, height = sink.scroll_metrics()
        at_bottom      = bottom == height
    sink.append(entry)
    if at_bottom:
        sink.scroll_to_bottom()


# Live session manager
class SessionState(enum.Enum):
    IDLE       = 'idle'
    STARTING   = 'starting'
    LIVE       = 'live'
    RESTARTING = 'restarting'


class LiveStatus(enum.Enum):
    OFF        = 'off'          # no session
    CONNECTING = 'connecting'   # nothing open yet, some still connecting
    PARTIAL    = 'partial'      # some hosts open
    LIVE       = 'live'         # every host open
    DOWN       = 'down'         # session active, nothing open or pending


@dataclass
class LiveSession:
    generation:  int
    filters:     FilterState
    connections: dict = field(default_factory=dict)   # host -> Connection
    backlog:     dict = field(default_factory=dict)   # host -> asyncio.Task
    dropped:     int  = 0                             # malformed stream payloads


class SessionManager:
    """
    Owns the one active LiveSession and its per-host connections.

    start() fans out one backlog fetch and one stream per host, restart
    happens through start() as well: the previous session is closed and the
    sink cleared first. Callbacks from connections or backlog tasks of a
    superseded session are ignored: connections are checked against the
    session's host registry, backlog results against the session generation.

    on_status(status) fires on every session or connection lifecycle change
    and when a stream payload is dropped;
    on_error(exc) receives ConfigurationError, BacklogFetchError and
    StreamConnectionError. Malformed payloads are only logged and counted.
    """

    def __init__(self, sink: RenderSink, *,
                 fetcher=None,
                 connection_factory=None,
                 client: aiohttp.ClientSession | None = None,
                 on_status=None,
                 on_error=None,
                 follow: bool = True,
                 fetch_timeout: float = FETCH_TIMEOUT):
        self._sink          = sink
        self._fetcher       = fetcher
        self._connect       = connection_factory or self._default_connection
        self._http          = client
        self._owns_http     = client is None
        self._on_status     = on_status
        self._on_error      = on_error
        self.follow         = follow
        self.fetch_timeout  = fetch_timeout

        self.filters: FilterState | None   = None
        self._session: LiveSession | None  = None
        self._state       = SessionState.IDLE
        self._generation  = 0
        self._tasks: set  = set()

    # Queries
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> LiveSession | None:
        return self._session

    @property
    def active(self) -> bool:
        return self._session is not None

    @property
    def status(self) -> LiveStatus:
        s = self._session
        if s is None:
            return LiveStatus.OFF
        states = [c.state for c in s.connections.values()]
        n_open = states.count(ConnState.OPEN)
        if states and n_open == len(states):
            return LiveStatus.LIVE
        if n_open:
            return LiveStatus.PARTIAL
        if ConnState.CONNECTING in states:
            return LiveStatus.CONNECTING
        return LiveStatus.DOWN

    def connection_counts(self) -> tuple:
        # (open, total) for the active session.
        if self._session is None:
            return 0, 0
        conns = self._session.connections.values()
        return sum(1 for c in conns if c.state is ConnState.OPEN), len(conns)

    # Transitions
    def start(self, filters: FilterState | None = None) -> LiveSession:
        filters = filters or self.filters
        if filters is None:
            raise ConfigurationError('no hosts configured')

        if self._session is not None:
            self._state = SessionState.RESTARTING
            self._teardown()

        self._sink.clear()
        self._state       = SessionState.STARTING
        self._generation += 1
        self.filters      = filters
        session           = LiveSession(self._generation, filters)
        self._session     = session
        logger.info('session %d starting: hosts=%s services=%r keywords=%r',
                    session.generation, ','.join(filters.hosts),
                    filters.services, filters.message_keywords)

        for host in filters.hosts:
            try:
                url = build_url(host, 'stream', filters)
            except ConfigurationError as exc:
                self._report(exc)
                continue
            task = asyncio.get_running_loop().create_task(
                self._populate(session.generation, host, filters),
                name=f'backlog {host}')
            session.backlog[host] = self._track(task)

            conn = self._connect(host, url,
                                 on_open=self._on_stream_open,
                                 on_payload=self._on_stream_payload,
                                 on_close=self._on_stream_close)
            session.connections[host] = conn
            conn.open()
            if getattr(conn, 'task', None) is not None:
                self._track(conn.task)

        self._state = SessionState.LIVE
        self._changed()
        return session

    def filters_changed(self, filters: FilterState) -> LiveSession:
        return self.start(filters)

    def stop(self) -> None:
        if self._session is None:
            return
        logger.info('session %d stopped', self._session.generation)
        self._teardown()
        self._state = SessionState.IDLE
        self._changed()

    async def aclose(self) -> None:
        self.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

    def _teardown(self) -> None:
        session, self._session = self._session, None
        for conn in session.connections.values():
            conn.close()
        for task in session.backlog.values():
            task.cancel()

    # Backlog
    async def _populate(self, generation: int, host: str, filters: FilterState) -> None:
        try:
            entries = await self._get_fetcher().fetch(host, filters)
        except BacklogFetchError as exc:
            if self._is_current(generation):
                self._report(exc)
            return
        if not self._is_current(generation):
            logger.debug('dropping %d backlog entries of superseded session %d from %s',
                         len(entries), generation, host)
            return
        logger.debug('backlog of %s: %d entries', host, len(entries))
        for entry in entries:
            append_entry(self._sink, entry, self.follow)

    # Stream callbacks
    def _on_stream_open(self, conn) -> None:
        if not self._owns(conn):
            return
        logger.info('stream open: %s', conn.host)
        self._changed()

    def _on_stream_payload(self, conn, data) -> None:
        if not self._owns(conn):
            return
        try:
            entry = LogEntry.from_json(data)
        except MalformedEntryError as exc:
            self._session.dropped += 1
            logger.warning('dropping malformed payload from %s: %s', conn.host, exc)
            self._changed()
            return
        append_entry(self._sink, entry, self.follow)

    def _on_stream_close(self, conn, error) -> None:
        if not self._owns(conn):
            return
        if error is not None:
            self._report(error)
        self._changed()

    # Helpers
    def _owns(self, conn) -> bool:
        s = self._session
        return s is not None and s.connections.get(conn.host) is conn

    def _is_current(self, generation: int) -> bool:
        return self._session is not None and self._session.generation == generation

    def _report(self, exc: LiveTailError) -> None:
        logger.warning('%s: %s', type(exc).__name__, exc)
        if self._on_error:
            self._on_error(exc)

    def _changed(self) -> None:
        if self._on_status:
            self._on_status(self.status)

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http      = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    def _get_fetcher(self):
        if self._fetcher is None:
            self._fetcher = BacklogFetcher(self._client(), timeout=self.fetch_timeout)
        return self._fetcher

    def _default_connection(self, host, url, on_open, on_payload, on_close) -> Connection:
        return Connection(host, url, self._client(), on_open, on_payload, on_close)

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error('%s failed', task.get_name(), exc_info=task.exception())


# Log table
class EntryWalker(urwid.ListWalker):
    """
    ListWalker over a growing list of LogEntry objects.
    Row widgets are built on demand for the rows the ListBox paints;
    an LRU cache bounds how many are kept.
    """
    CACHE_SIZE = 600

    def __init__(self):
        self._entries: list     = []
        self._focus             = 0
        self._cache: dict       = {}
        self._cache_order: list = []

    # Mutation
    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)
        self._modified()

    def clear(self) -> None:
        self._entries = []
        self._focus   = 0
        self._cache.clear()
        self._cache_order.clear()
        self._modified()

    def entry(self, pos: int) -> LogEntry:
        return self._entries[pos]

    def focus_index(self) -> int:
        return self._focus

    def set_focus(self, pos):
        if 0 <= pos < len(self._entries):
            self._focus = pos
            self._modified()

    # Cache
    def _build(self, pos):
        if pos in self._cache:
            return self._cache[pos]
        e = self._entries[pos]
        w = urwid.AttrMap(urwid.Columns([
            (COL_TS,   urwid.Text(('c_ts',   e.timestamp), wrap='clip')),
            (COL_HOST, urwid.Text(('c_host', e.hostname),  wrap='clip')),
            (COL_SVC,  urwid.Text(('c_svc',  e.service),   wrap='clip')),
            urwid.Text(('c_msg', e.message)),
        ], dividechars=1), None, 'c_focus')
        if len(self._cache) >= self.CACHE_SIZE:
            evict = self._cache_order.pop(0)
            self._cache.pop(evict, None)
        self._cache[pos] = w
        self._cache_order.append(pos)
        return w

    # ListWalker protocol
    def __len__(self):
        return len(self._entries)

    def get_focus(self):
        if not self._entries:
            return None, None
        return self._build(self._focus), self._focus

    def get_next(self, pos):
        nxt = pos + 1
        if nxt >= len(self._entries):
            return None, None
        return self._build(nxt), nxt

    def get_prev(self, pos):
        prv = pos - 1
        if prv < 0:
            return None, None
        return self._build(prv), prv

    # Scrolling protocol (for ScrollBar)
    def get_scrollpos(self, size=None, focus=False):
        return self._focus

    def rows_max(self, size=None, focus=False):
        return len(self._entries)


class LogTable(urwid.WidgetWrap, RenderSink):
    """
    The visible log: column header, rows in arrival order, scrollbar.
    The focused row is the viewport anchor; the view is "at bottom" when
    the last row has focus (or the table is empty), the same rule as
    tail mode in a pager. scroll_metrics() is therefore
    (focused row + 1, row count), not a screen row offset: a focused last
    row counts as at bottom even when rows above it are partly off screen.
    """

    def __init__(self, on_change=None):
        self.walker     = EntryWalker()
        self.listbox    = urwid.ListBox(self.walker)
        self._on_change = on_change
        header = urwid.Columns([
            (COL_TS,   urwid.Text('Date')),
            (COL_HOST, urwid.Text('Host')),
            (COL_SVC,  urwid.Text('Service')),
            urwid.Text('Message'),
        ], dividechars=1)
        self._scrollbar = urwid.ScrollBar(self.listbox, side='right', width=1,
                                          thumb_char='┃', trough_char='│')
        super().__init__(urwid.Pile([
            ('pack', urwid.AttrMap(header, 'col_hdr')),
            self._scrollbar,
        ], focus_item=1))

    @property
    def count(self) -> int:
        return len(self.walker)

    def append(self, entry: LogEntry) -> None:
        self.walker.append(entry)
        self._notify()

    def clear(self) -> None:
        self.walker.clear()
        self._notify()

    def scroll_metrics(self) -> tuple:
        n = len(self.walker)
        return (self.walker.focus_index() + 1 if n else 0), n

    def scroll_to_bottom(self) -> None:
        if len(self.walker):
            self.listbox.focus_position = len(self.walker) - 1

    def scroll_to_top(self) -> None:
        if len(self.walker):
            self.listbox.focus_position = 0

    def _notify(self) -> None:
        if self._on_change:
            self._on_change()


# Widgets
class FilterEdit(urwid.Edit):
    # Edit that lets Enter/Esc bubble up to unhandled_input.
    def keypress(self, size, key):
        if key in ('enter', 'esc'):
            return key
        return super().keypress(size, key)


class HostsEdit(urwid.Edit):
    # Enter applies the edited host list, Esc cancels.
    signals = ['change', 'postchange', 'apply', 'cancel']

    def keypress(self, size, key):
        if key == 'enter':
            urwid.emit_signal(self, 'apply', self.get_edit_text())
            return None
        if key == 'esc':
            urwid.emit_signal(self, 'cancel')
            return None
        return super().keypress(size, key)


def make_hosts_overlay(behind: urwid.Widget, hosts, on_apply, on_cancel) -> urwid.Overlay:
    edit = HostsEdit(caption='', edit_text=','.join(hosts))
    urwid.connect_signal(edit, 'apply', on_apply)
    urwid.connect_signal(edit, 'cancel', on_cancel)

    body = urwid.Pile([
        urwid.Text(('st', ' Comma-separated agent URLs')),
        urwid.AttrMap(edit, 'fe', 'fe_f'),
        urwid.Divider('─'),
        urwid.Text([
            ('fk', 'Enter'), ('st', ' connect  '),
            ('fk', 'Esc'),   ('st', ' cancel'),
        ], align='center'),
    ], focus_item=1)

    box = urwid.AttrMap(
        urwid.LineBox(urwid.Filler(body, valign='top'),
                      title=' ◉ LiveTail — Hosts '),
        'sel_box',
    )
    return urwid.Overlay(
        box, behind,
        'center', ('relative', 70),
        'middle', 7,
    )


class StatusIndicator:
    _FRAMES = ['⠋', '⠙', '⠹', '⠸', '⠼', '⠴', '⠦', '⠧', '⠇', '⠏']

    def __init__(self):
        self.status     = LiveStatus.OFF
        self.open       = 0
        self.total      = 0
        self._frame_idx = 0

    def update(self, status: LiveStatus, open_count: int, total: int) -> None:
        self.status = status
        self.open   = open_count
        self.total  = total

    def tick(self) -> bool:
        # Advance the spinner; False once there is nothing to animate.
        self._frame_idx = (self._frame_idx + 1) % len(self._FRAMES)
        return self.status is LiveStatus.CONNECTING

    def render(self) -> list:
        if self.status is LiveStatus.LIVE:
            return [('tail_on', '● LIVE')]
        if self.status is LiveStatus.PARTIAL:
            return [('tail_part', f'◐ PARTIAL {self.open}/{self.total}')]
        if self.status is LiveStatus.CONNECTING:
            return [('h_dim', f'{self._FRAMES[self._frame_idx]} connecting…')]
        if self.status is LiveStatus.DOWN:
            return [('tail_down', '○ DOWN')]
        return [('tail_off', '○ ────')]


# Main application
class ViewerApp:
    def __init__(self, filters: FilterState, follow: bool = True,
                 fetch_timeout: float = FETCH_TIMEOUT, hosts_file: Path | None = None,
                 fetcher=None, connection_factory=None):
        self.filters     = filters
        self.hosts_file  = hosts_file
        self.last_error  = ''
        self._loop_ref   = None
        self._debounced  = None
        self._overlay    = None
        self._spin_alarm = None
        self._draw_alarm = None

        self._status = StatusIndicator()
        self.table   = LogTable(on_change=self._on_table_change)
        self.manager = SessionManager(
            self.table,
            fetcher=fetcher,
            connection_factory=connection_factory,
            on_status=self._on_status,
            on_error=self._on_error,
            follow=follow,
            fetch_timeout=fetch_timeout,
        )
        self._build_ui()

    # Build
    def _build_ui(self):
        self.w_title = urwid.Text('', wrap='clip')

        self.w_services = FilterEdit(caption='', edit_text=self.filters.services)
        self.w_keywords = FilterEdit(caption='', edit_text=self.filters.message_keywords)
        for w in (self.w_services, self.w_keywords):
            urwid.connect_signal(w, 'postchange', lambda *_: self._on_edit_change())

        self.cb_live = urwid.CheckBox('LIVE', False,
            on_state_change=lambda w, s: self._on_live_toggle(s))

        def _pad(w):
            return urwid.Padding(w, left=1, right=1)

        self.w_filter_cols = urwid.Columns([
            ('pack', urwid.Text(('fl', ' Services: '))),
            urwid.AttrMap(self.w_services, 'fe', 'fe_f'),
            ('pack', urwid.Text(('fl', ' Keywords: '))),
            urwid.AttrMap(self.w_keywords, 'fe', 'fe_f'),
            ('pack', _pad(urwid.AttrMap(self.cb_live, 'fc', 'fc_f'))),
        ], dividechars=0, focus_column=1)

        self.w_header = urwid.Pile([
            urwid.AttrMap(self.w_title, 'header'),
            self.w_filter_cols,
        ])

        self.w_footer = urwid.Text('', wrap='clip')
        self.frame = urwid.Frame(
            body       = self.table,
            header     = self.w_header,
            footer     = urwid.AttrMap(self.w_footer, 'footer'),
            focus_part = 'body',
        )
        self._refresh_title()
        self._refresh_footer()

    # Refresh
    def _refresh_title(self):
        n = len(self.filters.hosts)
        self.w_title.set_text([
            ('header', ' ◉  LiveTail  '),
            ('h_dim',  f'{n} host{"s" if n != 1 else ""}  '),
            *self._status.render(),
        ])

    def _refresh_footer(self):
        session = self.manager.session
        dropped = session.dropped if session else 0
        counts  = f'  {self.table.count:,} entries'
        if dropped:
            counts += f'  {dropped:,} dropped'
        error = ([('ferr', f'  ⚠ {self.last_error}')] if self.last_error else [])

        self.w_footer.set_text([
            ('fk', '  q'),   ('footer', ':quit  '),
            ('fk', '/'),     ('footer', ':filter  '),
            ('fk', 'l'),     ('footer', ':live  '),
            ('fk', 'r'),     ('footer', ':restart  '),
            ('fk', 'c'),     ('footer', ':clear  '),
            ('fk', 'h'),     ('footer', ':hosts  '),
            ('fk', 'g'),     ('footer', '/'),
            ('fk', 'G'),     ('footer', ':top/btm  '),
            ('footer', counts),
            *error,
        ])

    def _schedule_draw(self):
        # Network callbacks don't trigger a redraw on their own; batch them.
        if self._loop_ref is None or self._draw_alarm is not None:
            return
        self._draw_alarm = self._loop_ref.set_alarm_in(DRAW_DELAY, self._on_draw_alarm)

    def _on_draw_alarm(self, loop, _):
        self._draw_alarm = None
        loop.draw_screen()

    def _start_spinner(self):
        if self._spin_alarm is None and self._loop_ref is not None:
            self._spin_alarm = self._loop_ref.set_alarm_in(0.1, self._on_spin_tick)

    def _on_spin_tick(self, loop, _):
        if self._status.tick():
            self._refresh_title()
            self._spin_alarm = loop.set_alarm_in(0.1, self._on_spin_tick)
        else:
            self._spin_alarm = None

    # Manager callbacks
    def _on_status(self, status: LiveStatus):
        self._status.update(status, *self.manager.connection_counts())
        self.cb_live.set_state(self.manager.active, do_callback=False)
        self._refresh_title()
        self._refresh_footer()
        if status is LiveStatus.CONNECTING:
            self._start_spinner()
        self._schedule_draw()

    def _on_error(self, exc: LiveTailError):
        self.last_error = str(exc)
        self._refresh_footer()
        self._schedule_draw()

    def _on_table_change(self):
        self._refresh_footer()
        self._schedule_draw()

    # Filters
    def current_filters(self) -> FilterState:
        return self.filters.with_filters(self.w_services.get_edit_text(),
                                         self.w_keywords.get_edit_text())

    def _on_edit_change(self):
        if self._debounced is None:
            # Loop not running yet; nothing to restart.
            self.filters = self.current_filters()
            return
        self._debounced(self.current_filters())

    def _apply_filters(self, filters: FilterState):
        self.filters    = filters
        self.last_error = ''
        self.manager.filters_changed(filters)

    # Actions
    def attach(self, loop: urwid.MainLoop) -> None:
        self._loop_ref  = loop
        self._debounced = Debouncer(loop.event_loop, FILTER_DEBOUNCE, self._apply_filters)

    def start(self):
        self.last_error = ''
        self.manager.start(self.current_filters())

    def _on_live_toggle(self, state: bool):
        if state:
            self.start()
        else:
            self.manager.stop()

    def toggle_live(self):
        self.cb_live.toggle_state()

    def restart(self):
        self.start()

    def clear(self):
        self.table.clear()

    def go_top(self):
        self.table.scroll_to_top()

    def go_bottom(self):
        self.table.scroll_to_bottom()

    def focus_filter(self):
        self.frame.focus_position = 'header'
        try:    self.w_header.focus_position = 1
        except IndexError: pass
        try:    self.w_filter_cols.focus_position = 1
        except IndexError: pass

    def focus_body(self):
        self.frame.focus_position = 'body'

    # Host editor
    def open_hosts_editor(self):
        self._overlay = make_hosts_overlay(self.frame, self.filters.hosts,
                                           self._on_hosts_apply, self._close_overlay)
        if self._loop_ref is not None:
            self._loop_ref.widget = self._overlay

    def _close_overlay(self, *_):
        self._overlay = None
        if self._loop_ref is not None:
            self._loop_ref.widget = self.frame

    def _on_hosts_apply(self, text: str):
        try:
            filters = self.current_filters().with_hosts(parse_hosts([text]))
        except ConfigurationError as exc:
            self.last_error = str(exc)
            self._refresh_footer()
            return
        self._close_overlay()
        save_hosts(filters.hosts, self.hosts_file)
        self._apply_filters(filters)
        self._refresh_title()

    # Input handler
    def handle_input(self, key: str):
        if self._overlay is not None:
            return
        if key in ('q', 'Q'):
            raise urwid.ExitMainLoop()
        elif key == '/':
            self.focus_filter()
        elif key in ('esc', 'enter'):
            self.focus_body()
        elif key in ('l', 'L'):
            self.toggle_live()
        elif key in ('r', 'R'):
            self.restart()
        elif key in ('c', 'C'):
            self.clear()
        elif key in ('h', 'H'):
            self.open_hosts_editor()
        elif key == 'g':
            self.go_top()
        elif key == 'G':
            self.go_bottom()


# Saved hosts
def hosts_file_path() -> Path:
    base = os.environ.get('XDG_CONFIG_HOME') or os.path.join(os.path.expanduser('~'), '.config')
    return Path(base) / 'livetail' / HOSTS_FILE_NAME


def load_saved_hosts(path: Path | None = None) -> list:
    path = path or hosts_file_path()
    try:
        with open(path, encoding='utf-8') as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return []
    except (OSError, ValueError) as exc:
        logger.warning('ignoring unreadable hosts file %s: %s', path, exc)
        return []
    hosts = data.get('hosts') if isinstance(data, dict) else None
    if not isinstance(hosts, list):
        return []
    return [h for h in hosts if isinstance(h, str) and h.strip()]


def save_hosts(hosts, path: Path | None = None) -> None:
    path = path or hosts_file_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({'hosts': list(hosts)}, indent=2) + '\n', encoding='utf-8')
    except OSError as exc:
        logger.warning('could not save hosts to %s: %s', path, exc)


# Logging
def setup_logging(log_file: str | None = None, verbose: bool = False) -> logging.Logger:
    """
    JSON lines to *log_file*, nothing otherwise: the terminal belongs to
    the UI, so console output is never configured.
    """
    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    if not log_file:
        root_logger.addHandler(logging.NullHandler())
        return root_logger

    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    json_formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(funcName)s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(json_formatter)
    root_logger.addHandler(file_handler)
    return root_logger


# Entry point
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog='livetail',
        description='LiveTail — multi-host live log viewer',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__)
    ap.add_argument('-e', '--endpoint', dest='hosts', action='append', metavar='URL',
                    help='agent base URL; repeat or comma-separate for several hosts')
    ap.add_argument('-s', '--services', default='', metavar='CSV',
                    help='only these services (comma-separated)')
    ap.add_argument('-k', '--keywords', default='', metavar='TEXT',
                    help='only messages containing these keywords')
    ap.add_argument('--no-follow', action='store_true',
                    help='never scroll to new entries automatically')
    ap.add_argument('--timeout', type=float, default=FETCH_TIMEOUT, metavar='SECONDS',
                    help=f'backlog request timeout (default: {FETCH_TIMEOUT:g})')
    ap.add_argument('--log-file', metavar='PATH', help='write JSON diagnostics here')
    ap.add_argument('-v', '--verbose', action='store_true', help='debug-level diagnostics')
    return ap


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file, args.verbose)

    hosts_file = hosts_file_path()
    hosts      = parse_hosts(args.hosts) or load_saved_hosts(hosts_file)
    try:
        filters = FilterState.create(hosts, args.services, args.keywords)
    except ConfigurationError as exc:
        sys.exit(f'Error: {exc} (pass -e URL)')
    save_hosts(filters.hosts, hosts_file)

    aio_loop = asyncio.new_event_loop()
    asyncio.set_event_loop(aio_loop)

    app = ViewerApp(filters, follow=not args.no_follow,
                    fetch_timeout=args.timeout, hosts_file=hosts_file)
    loop = urwid.MainLoop(
        app.frame,
        palette         = PALETTE,
        unhandled_input = app.handle_input,
        handle_mouse    = True,
        event_loop      = urwid.AsyncioEventLoop(loop=aio_loop),
    )
    app.attach(loop)
    loop.set_alarm_in(0, lambda *_: app.start())

    try:
        loop.run()
    finally:
        aio_loop.run_until_complete(app.manager.aclose())
        aio_loop.close()


if __name__ == '__main__':
    main()
