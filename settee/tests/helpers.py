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
Fake `requests` objects shared by the `settee` unit tests.
"""

import json
import threading

import settee


class FakeResponse:
    """
    Stands in for a ``requests.Response``.

    *chunks* is what `FakeResponse.iter_content()` yields.  An exception
    instance among the chunks is raised instead of yielded, like a connection
    dropping mid-stream.
    """

    def __init__(self, status_code=200, reason='OK', headers=None,
                 content=b'', chunks=()):
        self.status_code = status_code
        self.reason = reason
        self.headers = ({} if headers is None else headers)
        self.content = content
        self.chunks = list(chunks)
        self.pulled = 0
        self.closes = 0
        self.iter_args = []

    def iter_content(self, chunk_size=1):
        self.iter_args.append(chunk_size)
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            self.pulled += 1
            yield chunk

    def close(self):
        self.closes += 1


class FakeSocket:
    """
    Records ``shutdown()`` calls and runs *on_shutdown* for each one.
    """

    def __init__(self, on_shutdown):
        self.on_shutdown = on_shutdown
        self.shutdowns = []

    def shutdown(self, how):
        self.shutdowns.append(how)
        self.on_shutdown()


class FakeConnection:
    def __init__(self, sock):
        self.sock = sock


class FakeRaw:
    def __init__(self, connection):
        self.connection = connection


class BlockingResponse(FakeResponse):
    """
    A streaming response whose body blocks in a read after its *chunks*.

    The blocked read only ends when the socket at ``raw.connection.sock`` is
    shut down, like a real ``requests`` streaming response.
    """

    def __init__(self, chunks=()):
        super().__init__(chunks=chunks)
        self.waiting = threading.Event()
        self.unblocked = threading.Event()
        self.sock = FakeSocket(self.unblocked.set)
        self.raw = FakeRaw(FakeConnection(self.sock))

    def iter_content(self, chunk_size=1):
        yield from super().iter_content(chunk_size)
        self.waiting.set()
        self.unblocked.wait()
        raise ConnectionResetError('connection closed by shutdown')


class RaisingCloseResponse(FakeResponse):
    """
    A response whose ``close()`` fails after counting the attempt.
    """

    def __init__(self, error, chunks=()):
        super().__init__(chunks=chunks)
        self.error = error

    def close(self):
        super().close()
        raise self.error


def json_response(obj, status_code=200, reason='OK'):
    return FakeResponse(status_code, reason,
        headers={'content-type': 'application/json'},
        content=json.dumps(obj).encode(),
    )


class FakeSession:
    """
    Stands in for a ``requests.Session``, replaying canned responses.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closes = 0

    def request(self, method, url, **kw):
        self.calls.append((method, url, kw))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closes += 1

    def body(self, index=-1):
        data = self.calls[index][2]['data']
        return (None if data is None else json.loads(data.decode()))


class FakeContext(settee.Context):
    """
    A `settee.Context` whose sessions are `FakeSession` instances.
    """

    def __init__(self, env=None, session=None, stream_session=None):
        super().__init__(env)
        self.threadlocal.session = (
            FakeSession() if session is None else session
        )
        self.stream_session = stream_session

    def new_session(self):
        return self.stream_session

    @property
    def session(self):
        return self.threadlocal.session
