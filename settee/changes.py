# settee: a lightweight Couch client with a streaming change feed
# Copyright (C) 2011-2018 Novacut Inc
#
# This file is part of `settee`.
#
# `settee` is free software: you can redistribute it and/or modify it under
# the terms of the GNU Lesser General Public License as published by the Free
# Software Foundation, either version 3 of the License, or (at your option) any
# later version.
#
# `settee` is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranty of MERCHANTABILITY or FITNESS
# FOR A PARTICULAR PURPOSE.  See the GNU Lesser General Public License for more
# details.
#
# You should have received a copy of the GNU Lesser General Public License along
# with `settee`.  If not, see <http://www.gnu.org/licenses/>.
#
# Authors:
#   Jason Gerard DeRose <jderose@novacut.com>
#

"""
Read the CouchDB changes feed, either by polling or as a continuous stream.


Poll mode
---------

A single GET /db/_changes returns one JSON document with a batch of changes:

>>> result = {
...     'last_seq': '2-g1AAAA',
...     'pending': 0,
...     'results': [
...         {'seq': '1-g1AAAA', 'id': 'foo', 'changes': [{'rev': '1-abc'}]},
...         {'seq': '2-g1AAAA', 'id': 'bar', 'changes': [{'rev': '3-def'}],
...          'deleted': True},
...     ],
... }
>>> changes = decode_changes(result)
>>> changes.last_seq
'2-g1AAAA'
>>> changes.results[1]
ChangeEvent(seq='2-g1AAAA', id='bar', revs=['3-def'], deleted=True, doc=None)


Continuous mode
---------------

With ``feed=continuous`` CouchDB keeps the response open and writes one JSON
object per line as changes happen, with empty lines as heartbeats.  A
`ChangeFeed` reads those lines in a background thread and hands each
well-formed change to the consumer through a zero-capacity `Channel`:

    1. `iter_lines()` frames the body chunks into b'\\n' terminated lines

    2. `parse_line()` trims each line and decodes it into a `ChangeEvent`,
       returning None for blank lines, malformed JSON, and records without a
       sequence (like the final ``{"last_seq": ...}`` record)

    3. `Channel.send()` blocks until the consumer takes the event, so a slow
       consumer throttles the network read

When the body ends (or a read fails), the response is released and the
channel closed, in that order, exactly once.  The consumer just sees the end
of iteration; the exception that ended the feed, if any, is kept in
`ChangeFeed.error`.
"""

from collections import namedtuple
import json
import logging
import socket
import threading


log = logging.getLogger()

ChangeEvent = namedtuple('ChangeEvent', 'seq id revs deleted doc')
Changes = namedtuple('Changes', 'last_seq results pending')

# CouchDB's heartbeat interval for ``heartbeat=true``, in milliseconds:
DEFAULT_HEARTBEAT = 60000

CHANGES_OPTIONS = frozenset([
    'att_encoding_info',
    'attachments',
    'conflicts',
    'descending',
    'doc_ids',
    'feed',
    'filter',
    'heartbeat',
    'include_docs',
    'last_event_id',
    'limit',
    'seq_interval',
    'since',
    'style',
    'timeout',
    'view',
])


def _build_options(options):
    unsupported = sorted(set(options) - CHANGES_OPTIONS)
    if unsupported:
        raise TypeError(
            'unsupported _changes options: {}'.format(', '.join(unsupported))
        )
    kw = dict(options)
    if 'last_event_id' in kw:
        kw['last-event-id'] = kw.pop('last_event_id')
    if 'doc_ids' in kw:
        kw.setdefault('filter', '_doc_ids')
    return kw


def continuous_options(options):
    """
    Return a copy of *options* with the feed forced to ``'continuous'``.

    For example:

    >>> options = {'since': 'now', 'feed': 'longpoll'}
    >>> continuous_options(options)
    {'since': 'now', 'feed': 'continuous'}

    The *options* passed in are never modified:

    >>> options
    {'since': 'now', 'feed': 'longpoll'}

    """
    kw = _build_options(options)
    kw['feed'] = 'continuous'
    return kw


def poll_options(options):
    """
    Return a copy of *options* without a ``'continuous'`` feed.

    For example:

    >>> poll_options({'feed': 'continuous', 'limit': 50})
    {'limit': 50}
    >>> poll_options({'feed': 'longpoll', 'doc_ids': ['foo']})
    {'feed': 'longpoll', 'doc_ids': ['foo'], 'filter': '_doc_ids'}

    """
    kw = _build_options(options)
    if kw.get('feed') == 'continuous':
        del kw['feed']
    return kw



def stream_timeout(options, default):
    """
    Return the socket read timeout, in seconds, for a continuous feed.

    CouchDB stays quiet for up to *heartbeat* milliseconds between lines, or
    when there is no heartbeat, up to *timeout* milliseconds before it ends
    the feed.  The read timeout is twice that quiet period, but never less
    than *default*:

    >>> stream_timeout({'heartbeat': 10000}, 65)
    65
    >>> stream_timeout({'timeout': 300000}, 65)
    600.0
    >>> stream_timeout({}, 65)
    65

    """
    quiet = options.get('heartbeat')
    if quiet is True:
        quiet = DEFAULT_HEARTBEAT
    if quiet is None or isinstance(quiet, bool):
        quiet = options.get('timeout')
    if isinstance(quiet, bool) or not isinstance(quiet, (int, float)):
        return default
    return max(default, 2 * quiet / 1000)


def _seq_str(seq):
    # CouchDB 1.x uses integer sequences, 2.x uses opaque strings:
    if isinstance(seq, bool):
        return None
    if isinstance(seq, int):
        return str(seq)
    if isinstance(seq, str):
        return seq
    return None


def decode_change(row):
    """
    Decode one changes row into a `ChangeEvent`, or return None.

    For example:

    >>> decode_change({'seq': 7, 'id': 'foo', 'changes': [{'rev': '2-x'}]})
    ChangeEvent(seq='7', id='foo', revs=['2-x'], deleted=False, doc=None)

    None is returned for rows without a usable sequence, and for rows whose
    fields have the wrong type:

    >>> decode_change({'seq': '', 'id': 'foo'}) is None
    True
    >>> decode_change({'seq': '3', 'id': 'foo', 'changes': 'nope'}) is None
    True

    """
    if not isinstance(row, dict):
        return None
    seq = _seq_str(row.get('seq'))
    if not seq:
        return None
    _id = row.get('id', '')
    if not isinstance(_id, str):
        return None
    changes = row.get('changes', [])
    if not isinstance(changes, list):
        return None
    revs = []
    for change in changes:
        if not isinstance(change, dict):
            return None
        rev = change.get('rev')
        if rev is None:
            continue
        if not isinstance(rev, str):
            return None
        revs.append(rev)
    return ChangeEvent(seq, _id, revs, row.get('deleted') is True, row.get('doc'))


def decode_changes(result):
    """
    Decode a poll mode ``_changes`` response into a `Changes` namedtuple.
    """
    results = []
    for row in result.get('results', []):
        event = decode_change(row)
        if event is not None:
            results.append(event)
    last_seq = _seq_str(result.get('last_seq'))
    pending = result.get('pending', 0)
    return Changes(('' if last_seq is None else last_seq), results, pending)


def parse_line(line):
    """
    Parse one line of a continuous feed into a `ChangeEvent`, or return None.

    >>> parse_line(b'{"seq":"1-abc","id":"doc1","changes":[{"rev":"1-x"}]}\\n')
    ChangeEvent(seq='1-abc', id='doc1', revs=['1-x'], deleted=False, doc=None)
    >>> parse_line(b'  \\n') is None
    True
    >>> parse_line(b'{"seq":"2",\\n') is None
    True

    """
    line = line.strip()
    if not line:
        return None
    try:
        row = json.loads(line.decode())
    except ValueError:
        log.debug('skipping malformed change line: %r', line[:80])
        return None
    return decode_change(row)


def iter_lines(chunks):
    """
    Yield each complete b'\\n' terminated line from the *chunks* iterable.

    Lines can be split across chunks, and a chunk can hold many lines:

    >>> list(iter_lines([b'{"a"', b':1}\\n\\n{"b"', b':2}\\n']))
    [b'{"a":1}\\n', b'\\n', b'{"b":2}\\n']

    A final line without a terminator is incomplete and is dropped:

    >>> list(iter_lines([b'{"a":1}\\n{"b"']))
    [b'{"a":1}\\n']

    """
    buf = bytearray()
    for chunk in chunks:
        # Only the new bytes can hold a terminator not seen yet:
        scan = len(buf)
        buf.extend(chunk)
        start = 0
        while True:
            end = buf.find(b'\n', scan)
            if end < 0:
                break
            yield bytes(buf[start:end + 1])
            start = scan = end + 1
        del buf[:start]


_EMPTY = object()


class ChannelClosed(Exception):
    """
    Raised by `Channel.recv()` once the channel is closed.
    """


class Channel:
    """
    Zero-capacity channel for handing items from one thread to another.

    `Channel.send()` only returns once a receiver has taken the item, so the
    sender can never get more than one item ahead of the receiver.

    >>> channel = Channel()
    >>> channel.close()
    True
    >>> channel.send('foo')
    False
    >>> channel.recv()
    Traceback (most recent call last):
      ...
    settee.changes.ChannelClosed: channel is closed

    """

    __slots__ = ('_cond', '_item', '_closed')

    def __init__(self):
        self._cond = threading.Condition()
        self._item = _EMPTY
        self._closed = False

    @property
    def closed(self):
        return self._closed

    def send(self, item):
        """
        Block until a receiver takes *item*.

        Returns True when *item* was taken, or False when the channel was
        closed first (in which case *item* is dropped).
        """
        with self._cond:
            while self._item is not _EMPTY and not self._closed:
                self._cond.wait()
            if self._closed:
                return False
            self._item = item
            self._cond.notify_all()
            while self._item is item and not self._closed:
                self._cond.wait()
            if self._item is item:
                self._item = _EMPTY
                return False
            return True

    def recv(self, timeout=None):
        """
        Block until an item is sent, then return it.

        Raises `ChannelClosed` once the channel is closed, or ``TimeoutError``
        if *timeout* seconds pass without an item.
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._closed or self._item is not _EMPTY, timeout
            )
            if self._closed:
                raise ChannelClosed('channel is closed')
            if not ready:
                raise TimeoutError('no item after {!r} seconds'.format(timeout))
            item = self._item
            self._item = _EMPTY
            self._cond.notify_all()
            return item

    def close(self):
        """
        Close the channel, waking all blocked senders and receivers.

        Returns True on the call that closed it, False if it was already closed.
        """
        with self._cond:
            if self._closed:
                return False
            self._closed = True
            self._cond.notify_all()
            return True


def _start_thread(target, *args):
    thread = threading.Thread(target=target, args=args)
    thread.daemon = True
    thread.start()
    return thread


def _shutdown_socket(response):
    # Wakes up a reader blocked in recv(), which a plain close() won't do:
    raw = getattr(response, 'raw', None)
    sock = getattr(getattr(raw, 'connection', None), 'sock', None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class ChangeFeed:
    """
    Iterate over the `ChangeEvent` values of a continuous change feed.

    A `ChangeFeed` takes exclusive ownership of a streaming *response* (and of
    the ``requests.Session`` it came from, if given).  Its reader thread starts
    immediately and blocks until the first event is consumed.

    Iteration ends when CouchDB closes the feed, when the connection fails, or
    after `ChangeFeed.close()`.  To resume later, start a new feed with
    ``since=feed.last_seq``.
    """

    def __init__(self, response, session=None, since=None):
        self.response = response
        self.session = session
        self.last_seq = _seq_str(since)
        self.error = None
        self.channel = Channel()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._released = False
        self.thread = _start_thread(self._run)

    def __repr__(self):
        return '{}(last_seq={!r}, closed={!r})'.format(
            self.__class__.__name__, self.last_seq, self.closed
        )

    def __iter__(self):
        return self

    def __next__(self):
        try:
            event = self.channel.recv()
        except ChannelClosed:
            raise StopIteration from None
        self.last_seq = event.seq
        return event

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def closed(self):
        """
        True once the response is released and the channel closed.

        After `ChangeFeed.close()` this stays False until the reader thread
        has done the release.
        """
        return self._released and self.channel.closed

    @property
    def released(self):
        return self._released

    def _run(self):
        try:
            chunks = self.response.iter_content(chunk_size=None)
            for line in iter_lines(chunks):
                if self._stop.is_set():
                    break
                event = parse_line(line)
                if event is None:
                    continue
                if not self.channel.send(event):
                    break
        except Exception as e:
            if not self._stop.is_set():
                self.error = e
                log.warning('change feed ended by %r: %r', e, self)
        finally:
            try:
                self._release()
            except Exception as e:
                log.warning('error releasing %r: %r', self, e)
                if self.error is None:
                    self.error = e
            finally:
                self.channel.close()
        log.info('change feed closed: %r', self)

    def _release(self):
        with self._lock:
            if self._released:
                return False
            self._released = True
        try:
            self.response.close()
        finally:
            if self.session is not None:
                self.session.close()
        return True

    def close(self):
        """
        Stop the feed and release its connection.

        Safe to call from any thread, any number of times.  The reader thread
        does the actual release; use `ChangeFeed.join()` to wait for it.
        """
        self._stop.set()
        self.channel.close()
        if not self._released:
            _shutdown_socket(self.response)

    def join(self, timeout=None):
        self.thread.join(timeout)
        return not self.thread.is_alive()
