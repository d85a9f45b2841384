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
`settee` - a lightweight Couch client with a streaming change feed.

Settee is a generic adapter for making HTTP requests to an arbitrary JSON
loving REST API like CouchDB.  Rather than wrapping the API in a bunch of
one-off methods, Settee makes it easy to call any part of the CouchDB REST API
through a handful of generic methods, and then adds a thin layer of niceties
for the parts of the API everyone uses: documents, bulk operations, views,
replication, security, users and sessions.

The one part that needs more than a request and a response is the continuous
change feed, which lives in `settee.changes`.
"""

import os
from base64 import b64encode
import json
import time
import mimetypes
from urllib.parse import urlparse, urlencode, quote
import threading
import math
import platform
import uuid
from collections import namedtuple
import logging

import requests

from .changes import (
    ChangeEvent,
    Changes,
    ChangeFeed,
    continuous_options,
    poll_options,
    stream_timeout,
    decode_changes,
)


__all__ = (
    'random_id',

    'Server',
    'Database',

    'ChangeEvent',
    'Changes',
    'ChangeFeed',

    'BadRequest',
    'Unauthorized',
    'Forbidden',
    'NotFound',
    'MethodNotAllowed',
    'NotAcceptable',
    'Conflict',
    'PreconditionFailed',
    'BadContentType',
    'BadRangeRequest',
    'ExpectationFailed',

    'ServerError',
)

__version__ = '18.10.0'
log = logging.getLogger()
USER_AGENT = 'Settee/{} ({} {}; {})'.format(__version__,
    platform.system(), platform.release(), platform.machine()
)

HTTP_IPv4_URL = 'http://127.0.0.1:5984/'
HTTPS_IPv4_URL = 'https://127.0.0.1:6984/'
HTTP_IPv6_URL = 'http://[::1]:5984/'
HTTPS_IPv6_URL = 'https://[::1]:6984/'
URL_CONSTANTS = (
    HTTP_IPv4_URL,
    HTTPS_IPv4_URL,
    HTTP_IPv6_URL,
    HTTPS_IPv6_URL,
)
DEFAULT_URL = HTTP_IPv4_URL
DEFAULT_TIMEOUT = 65

USERS_DB = '_users'
USER_PREFIX = 'org.couchdb.user:'
REPLICATOR_DB = '_replicator'
DESIGN_PREFIX = '_design/'

Attachment = namedtuple('Attachment', 'content_type data')


class BulkConflict(Exception):
    """
    Raised by `Database.save_many()` when one or more conflicts occur.
    """
    def __init__(self, conflicts, rows):
        self.conflicts = conflicts
        self.rows = rows
        count = len(conflicts)
        msg = ('conflict on {} doc' if count == 1 else 'conflict on {} docs')
        super().__init__(msg.format(count))


class HTTPError(Exception):
    """
    Base class for exceptions raised based on HTTP response status.
    """

    def __init__(self, response, method, url):
        self.response = response
        self.data = (b'' if response.content is None else response.content)
        self.method = method
        self.url = url
        super().__init__()

    def __str__(self):
        return '{} {}: {} {}'.format(
            self.response.status_code, self.response.reason, self.method, self.url
        )

    def loads(self):
        """
        Decode the JSON error body, typically ``{"error": ..., "reason": ...}``.
        """
        return json.loads(self.data.decode())


class ClientError(HTTPError):
    """
    Base class for all 4xx Client Error exceptions.
    """


class BadRequest(ClientError):
    '400 Bad Request'

class Unauthorized(ClientError):
    '401 Unauthorized'

class Forbidden(ClientError):
    '403 Forbidden'

class NotFound(ClientError):
    '404 Not Found'

class MethodNotAllowed(ClientError):
    '405 Method Not Allowed'

class NotAcceptable(ClientError):
    '406 Not Acceptable'

class Conflict(ClientError):
    '409 Conflict'

class Gone(ClientError):
    '410 Gone'

class LengthRequired(ClientError):
    '411 Length Required'

class PreconditionFailed(ClientError):
    '412 Precondition Failed'

class BadContentType(ClientError):
    '415 Unsupported Media Type'

class BadRangeRequest(ClientError):
    '416 Requested Range Not Satisfiable'

class ExpectationFailed(ClientError):
    '417 Expectation Failed'


class ServerError(HTTPError):
    """
    Used to raise exceptions for any 5xx Server Errors.
    """


errors = {
    400: BadRequest,
    401: Unauthorized,
    403: Forbidden,
    404: NotFound,
    405: MethodNotAllowed,
    406: NotAcceptable,
    409: Conflict,
    410: Gone,
    411: LengthRequired,
    412: PreconditionFailed,
    415: BadContentType,
    416: BadRangeRequest,
    417: ExpectationFailed,
}


def random_id():
    """
    Returns a random 128-bit ID as 32 lowercase hex digits.

    For example:

    >>> random_id()  #doctest: +SKIP
    '6c1e0b5a4e2f4d6b9a1c3e5f7a9b0c2d'

    """
    return uuid.uuid4().hex


def dumps(obj, pretty=False):
    """
    Safe and opinionated use of ``json.dumps()``.

    This function always calls ``json.dumps()`` with *ensure_ascii=False* and
    *sort_keys=True*.

    For example:

    >>> doc = {
    ...     'hello': 'мир',
    ...     'welcome': 'все',
    ... }
    >>> dumps(doc)
    '{"hello":"мир","welcome":"все"}'

    By default compact encoding is used, but if you supply *pretty=True*,
    4-space indentation will be used:

    >>> print(dumps(doc, pretty=True))
    {
        "hello": "мир",
        "welcome": "все"
    }

    """
    if pretty:
        return json.dumps(obj,
            ensure_ascii=False,
            sort_keys=True,
            separators=(',',': '),
            indent=4,
        )
    return json.dumps(obj,
        ensure_ascii=False,
        sort_keys=True,
        separators=(',',':'),
    )


def _json_body(obj):
    if obj is None:
        return None
    if isinstance(obj, bytes) or hasattr(obj, 'read'):
        return obj
    return dumps(obj).encode()


def encode_attachment(attachment):
    """
    Encode *attachment* for use in ``doc['_attachments']``.

    For example:

    >>> attachment = Attachment('image/png', b'PNG data')
    >>> dumps(encode_attachment(attachment))
    '{"content_type":"image/png","data":"UE5HIGRhdGE="}'

    :param attachment: an `Attachment` namedtuple
    """
    assert isinstance(attachment, tuple)
    assert len(attachment) == 2
    (content_type, data) = attachment
    assert isinstance(content_type, str)
    return {
        'content_type': content_type,
        'data': b64encode(data).decode(),
    }


def has_attachment(doc, name):
    """
    Return True if *doc* has an attachment named *name*.

    >>> has_attachment({'_attachments': {}}, 'thumbnail')
    False
    >>> has_attachment({'_attachments': {'thumbnail': {}}}, 'thumbnail')
    True

    """
    try:
        doc['_attachments'][name]
        return True
    except KeyError:
        return False


def mime_type(filename):
    """
    Guess the Content-Type of *filename* from its extension.

    >>> mime_type('dog.jpg')
    'image/jpeg'
    >>> mime_type('notes.txt')
    'text/plain; charset=utf-8'
    >>> mime_type('mystery')
    'application/octet-stream'

    """
    (content_type, encoding) = mimetypes.guess_type(filename)
    if content_type is None:
        return 'application/octet-stream'
    if content_type.startswith('text/'):
        return content_type + '; charset=utf-8'
    return content_type


JSON_KEYS = frozenset(['key', 'startkey', 'endkey', 'start_key', 'end_key'])


def _queryiter(options):
    """
    Return appropriately encoded (key, value) pairs sorted by key.

    We JSON encode the value if the key is "key", "startkey", or "endkey" (or
    their "start_key" and "end_key" spellings), or if the value is not a
    ``str``.
    """
    for key in sorted(options):
        value = options[key]
        if key in JSON_KEYS or not isinstance(value, str):
            value = json.dumps(value, sort_keys=True, separators=(',',':'))
        yield (key, value)


def basic_auth_header(basic):
    b = '{username}:{password}'.format(**basic).encode()
    return 'Basic ' + b64encode(b).decode()


def _basic_auth_header(basic):
    return {'authorization': basic_auth_header(basic)}


REPLICATION_KW = frozenset([
    'cancel',
    'continuous',
    'create_target',
    'doc_ids',
    'filter',
    'proxy',
    'query_params',
])


def replication_body(source, target, **kw):
    assert REPLICATION_KW.issuperset(kw), kw
    body = {
        'source': source,
        'target': target,
    }
    body.update(kw)
    return body


def replication_peer(name, env):
    peer =  {'url': env['url'] + name}
    if env.get('basic'):
        peer['headers'] = _basic_auth_header(env['basic'])
    return peer


def push_replication(local_db, remote_db, remote_env, **kw):
    """
    Build the object to POST for push replication.

    For details on what keyword arguments you might want to use, see:

        http://docs.couchdb.org/en/2.0.0/api/server/common.html#replicate
    """
    source = local_db
    target = replication_peer(remote_db, remote_env)
    return replication_body(source, target, **kw)


def pull_replication(local_db, remote_db, remote_env, **kw):
    """
    Build the object to POST for pull replication.

    For details on what keyword arguments you might want to use, see:

        http://docs.couchdb.org/en/2.0.0/api/server/common.html#replicate
    """
    source = replication_peer(remote_db, remote_env)
    target = local_db
    return replication_body(source, target, **kw)


def user_doc(name, password, roles=None):
    """
    Build a document for the ``_users`` database.

    >>> print(dumps(user_doc('bob', 'secret'), pretty=True))
    {
        "_id": "org.couchdb.user:bob",
        "name": "bob",
        "password": "secret",
        "roles": [],
        "type": "user"
    }

    """
    return {
        '_id': USER_PREFIX + name,
        'name': name,
        'password': password,
        'roles': ([] if roles is None else list(roles)),
        'type': 'user',
    }


def security_doc(admins=None, members=None):
    """
    Build a database ``_security`` document.

    >>> doc = security_doc(admins={'names': ['admin1']})
    >>> print(dumps(doc))
    {"admins":{"names":["admin1"],"roles":[]},"members":{"names":[],"roles":[]}}

    """
    def section(value):
        value = ({} if value is None else value)
        return {
            'names': list(value.get('names', [])),
            'roles': list(value.get('roles', [])),
        }
    return {
        'admins': section(admins),
        'members': section(members),
    }


def design_doc(name, views=None, filters=None, language='javascript'):
    """
    Build a design document named *name*.

    >>> design_doc('animals', filters={'byOwner': 'function(doc, req) {}'})
    {'_id': '_design/animals', 'language': 'javascript', 'filters': {'byOwner': 'function(doc, req) {}'}}

    """
    doc = {
        '_id': DESIGN_PREFIX + name,
        'language': language,
    }
    if views:
        doc['views'] = views
    if filters:
        doc['filters'] = filters
    return doc


def design_name(doc_id):
    """
    Return the name of the design document *doc_id*.

    >>> design_name('_design/test')
    'test'

    """
    if not doc_id.startswith(DESIGN_PREFIX):
        raise ValueError('not a design doc ID: {!r}'.format(doc_id))
    return doc_id[len(DESIGN_PREFIX):]


def id_slice_iter(rows, size=25):
    for i in range(math.ceil(len(rows) / size)):
        yield [row['id'] for row in rows[i*size : (i+1)*size]]


def build_ssl_options(config):
    """
    Map an *env* ``'ssl'`` dict to the ``requests`` *verify* and *cert*.

    For example:

    >>> build_ssl_options({'ca_file': '/my/server.ca'})
    ('/my/server.ca', None)
    >>> build_ssl_options({'cert_file': '/my/client.cert', 'key_file': '/my/client.key'})
    (True, ('/my/client.cert', '/my/client.key'))

    """
    if not isinstance(config, dict):
        raise TypeError(
            'ssl config must be a `dict`; got {!r}'.format(config)
        )
    if 'key_file' in config and 'cert_file' not in config:
        raise ValueError(
            "sslconfig['key_file'] provided without sslconfig['cert_file']"
        )
    for key in ('ca_file', 'ca_path', 'cert_file', 'key_file'):
        if key in config:
            value = config[key]
            if value != os.path.abspath(value):
                raise ValueError(
                    'sslconfig[{!r}] is not an absolute, normalized path: {!r}'.format(
                        key, value
                    )
                )
    verify = config.get('ca_file', config.get('ca_path', True))
    if 'key_file' in config:
        cert = (config['cert_file'], config['key_file'])
    else:
        cert = config.get('cert_file')
    return (verify, cert)


class Context:
    """
    Reuse HTTP connections between multiple `CouchBase` instances.

    When making serial requests one after another, you get considerably better
    performance when you reuse your ``requests.Session``.

    Individual `Server` and `Database` instances automatically do this: each
    thread gets its own thread-local session that will transparently be
    reused.

    To reuse connections among multiple `CouchBase` instances you need to create
    them with the same `Context` instance, like this:

    >>> ctx = Context('http://localhost:5984/')
    >>> foo = Database('foo', ctx=ctx)
    >>> bar = Database('bar', ctx=ctx)
    >>> foo.ctx is bar.ctx
    True

    All sessions created by a `Context` share one cookie jar, so a cookie
    session started with `Server.create_session()` in one thread is used by
    requests made in every other thread.
    """

    __slots__ = (
        'env',
        'basepath',
        't',
        'url',
        'threadlocal',
        'cookies',
        'verify',
        'cert',
        'timeout',
    )

    def __init__(self, env=None):
        if env is None:
            env = DEFAULT_URL
        if not isinstance(env, (dict, str)):
            raise TypeError(
                'env must be a `dict` or `str`; got {!r}'.format(env)
            )
        self.env = ({'url': env} if isinstance(env, str) else env)
        url = self.env.get('url', DEFAULT_URL)
        t = urlparse(url)
        if t.scheme not in ('http', 'https'):
            raise ValueError(
                'url scheme must be http or https; got {!r}'.format(url)
            )
        if not t.netloc:
            raise ValueError('bad url: {!r}'.format(url))
        self.basepath = (t.path if t.path.endswith('/') else t.path + '/')
        self.t = t
        self.url = self.full_url(self.basepath)
        self.threadlocal = threading.local()
        self.cookies = requests.cookies.RequestsCookieJar()
        self.timeout = self.env.get('timeout', DEFAULT_TIMEOUT)
        if t.scheme == 'https':
            sslconfig = self.env.get('ssl', {})
            (self.verify, self.cert) = build_ssl_options(sslconfig)
        else:
            (self.verify, self.cert) = (True, None)

    def full_url(self, path):
        return ''.join([self.t.scheme, '://', self.t.netloc, path])

    def new_session(self):
        session = requests.Session()
        session.cookies = self.cookies
        session.verify = self.verify
        session.cert = self.cert
        return session

    def get_threadlocal_session(self):
        session = getattr(self.threadlocal, 'session', None)
        if session is None:
            session = self.new_session()
            self.threadlocal.session = session
        return session

    def get_auth_headers(self):
        if 'basic' in self.env:
            return _basic_auth_header(self.env['basic'])
        return {}


class CouchBase(object):
    """
    Base class for `Server` and `Database`.

    This class is a simple a adapter to make it easy to call a JSON loving REST
    API similar to CouchDB (especially if it happens to be CouchDB).  To
    simplify things, there are some assumptions we can make:

        * Request bodies are empty or JSON, except when you PUT an attachment

        * Response bodies are JSON, except when you GET an attachment

    With just 7 methods you can access the entire CouchDB API quite elegantly:

        * `CouchBase.post()`
        * `CouchBase.put()`
        * `CouchBase.get()`
        * `CouchBase.delete()`
        * `CouchBase.head()`
        * `CouchBase.put_att()`
        * `CouchBase.get_att()`
    """

    def __init__(self, env=None, ctx=None):
        self.ctx = (Context(env) if ctx is None else ctx)
        self.env = self.ctx.env
        self.basepath = self.ctx.basepath
        self.url = self.ctx.url

    def raw_request(self, method, path, body, headers, stream_session=None,
                    timeout=None):
        url = self.ctx.full_url(path)
        kw = {
            'data': body,
            'headers': headers,
            'timeout': (self.ctx.timeout if timeout is None else timeout),
        }
        if stream_session is not None:
            return stream_session.request(method, url, stream=True, **kw)

        session = self.ctx.get_threadlocal_session()

        # We automatically retry once in case connection was closed by server:
        try:
            return session.request(method, url, **kw)
        except requests.ConnectionError:
            pass
        return session.request(method, url, **kw)

    def request(self, method, parts, options, body=None, headers=None,
                stream_session=None, timeout=None):
        h = {'user-agent': USER_AGENT}
        if headers:
            h.update(headers)
        path = (self.basepath + '/'.join(parts) if parts else self.basepath)
        query = (tuple(_queryiter(options)) if options else tuple())
        h.update(self.ctx.get_auth_headers())
        if query:
            path = '?'.join([path, urlencode(query)])
        response = self.raw_request(method, path, body, h, stream_session,
            timeout
        )
        if response.status_code >= 500:
            raise ServerError(response, method, path)
        if response.status_code >= 400:
            E = errors.get(response.status_code, ClientError)
            raise E(response, method, path)
        return response

    def recv_json(self, method, parts, options, body=None, headers=None):
        if headers is None:
            headers = {}
        headers['accept'] = 'application/json'
        response = self.request(method, parts, options, body, headers)
        return json.loads(response.content.decode())

    def post(self, obj, *parts, **options):
        """
        POST *obj*.

        For example, to create the doc "bar" in the database "foo":

        >>> cb = CouchBase()
        >>> cb.post({'_id': 'bar'}, 'foo')  #doctest: +SKIP
        {'rev': '1-967a00dff5e02add41819138abb3284d', 'ok': True, 'id': 'bar'}

        Or to compact the database "foo":

        >>> cb.post(None, 'foo', '_compact')  #doctest: +SKIP
        {'ok': True}

        """
        return self.recv_json('POST', parts, options, _json_body(obj),
            {'content-type': 'application/json'}
        )

    def put(self, obj, *parts, **options):
        """
        PUT *obj*.

        For example, to create the database "foo":

        >>> cb = CouchBase()
        >>> cb.put(None, 'foo')  #doctest: +SKIP
        {'ok': True}

        Or to create the doc "bar" in the database "foo":

        >>> cb.put({'micro': 'fiber'}, 'foo', 'bar')  #doctest: +SKIP
        {'rev': '1-fae0708c46b4a6c9c497c3a687170ad6', 'ok': True, 'id': 'bar'}

        """
        return self.recv_json('PUT', parts, options, _json_body(obj),
            {'content-type': 'application/json'}
        )

    def get(self, *parts, **options):
        """
        Make a GET request.

        For example, to get the welcome info from CouchDB:

        >>> cb = CouchBase()
        >>> cb.get()  #doctest: +SKIP
        {'couchdb': 'Welcome', 'version': '2.1.1'}

        Or to request the doc "bar" from the database "foo", including any
        attachments:

        >>> cb.get('foo', 'bar', attachments=True)  #doctest: +SKIP
        {'_rev': '1-967a00dff5e02add41819138abb3284d', '_id': 'bar'}
        """
        return self.recv_json('GET', parts, options)

    def delete(self, *parts, **options):
        """
        Make a DELETE request.

        For example, to delete the doc "bar" in the database "foo":

        >>> cb = CouchBase()
        >>> cb.delete('foo', 'bar', rev='1-fae0708c46b4a6c9c497c3a687170ad6')  #doctest: +SKIP
        {'rev': '2-18995243f0ebd1066fcb191a28d1222a', 'ok': True, 'id': 'bar'}

        """
        return self.recv_json('DELETE', parts, options)

    def head(self, *parts, **options):
        """
        Make a HEAD request.

        Returns a ``dict`` containing the response headers from the HEAD
        request.
        """
        response = self.request('HEAD', parts, options)
        return response.headers

    def put_att(self, mime, data, *parts, **options):
        """
        PUT an attachment.

        For example, to upload the attachment "baz" for the doc "bar" in the
        database "foo":

        >>> cb = CouchBase()
        >>> cb.put_att('image/png', b'da pic', 'foo', 'bar', 'baz')  #doctest: +SKIP
        {'rev': '1-f759cc40458cdd5bd8ae379174bc53d9', 'ok': True, 'id': 'bar'}

        Note that you don't need any attachment-specific method for DELETE -
        just use `CouchBase.delete()`.

        :param mime: The Content-Type, eg ``'image/jpeg'``
        :param data: a ``bytes`` instance or an open file
        :param parts: path components to construct URL relative to base path
        :param options: optional keyword arguments to include in query
        """
        return self.recv_json('PUT', parts, options, data,
            {'content-type': mime}
        )

    def get_att(self, *parts, **options):
        """
        GET an attachment.

        Returns a (mime, data) tuple with the attachment's Content-Type and
        data.  For example:

        >>> cb = CouchBase()
        >>> cb.get_att('foo', 'bar', 'baz')  #doctest: +SKIP
        Attachment(content_type='image/png', data=b'da pic')

        """
        response = self.request('GET', parts, options)
        content_type = response.headers['content-type']
        return Attachment(content_type, response.content)


class Server(CouchBase):
    """
    All the `CouchBase` methods plus some server-specific niceties.

    For example:

    >>> s = Server('http://localhost:5984/')
    >>> s
    Server('http://localhost:5984/')
    >>> s.url
    'http://localhost:5984/'
    >>> s.basepath
    '/'

    """

    def __repr__(self):
        return '{}({!r})'.format(self.__class__.__name__, self.url)

    def info(self):
        return self.get()

    def all_dbs(self):
        return self.get('_all_dbs')

    def active_tasks(self):
        return self.get('_active_tasks')

    def database(self, name, ensure=False):
        """
        Create a `Database` with the same `Context` as this `Server`.
        """
        db = Database(name, ctx=self.ctx)
        if ensure:
            db.ensure()
        return db

    def create(self, name):
        """
        Create the database *name*, raising `PreconditionFailed` if it exists.
        """
        return self.put(None, quote(name, safe=''))

    def delete_db(self, name):
        return self.delete(quote(name, safe=''))

    def database_info(self, name):
        return self.get(quote(name, safe=''))

    def replicate(self, source, target, **kw):
        """
        Trigger a replication from *source* to *target* via ``/_replicate``.

        Both can be database names local to this server, full URLs, or peer
        objects as built by `replication_peer()`.
        """
        log.info('replicating %r => %r', source, target)
        return self.post(replication_body(source, target, **kw), '_replicate')

    def replication_doc(self, source, target, doc_id=None, **kw):
        """
        Save a persistent replication document in the ``_replicator`` database.
        """
        doc = replication_body(source, target, **kw)
        doc['_id'] = (random_id() if doc_id is None else doc_id)
        return self.put(doc, REPLICATOR_DB, doc['_id'])

    def push(self, local_db, remote_db, remote_env, **kw):
        obj = push_replication(local_db, remote_db, remote_env, **kw)
        return self.post(obj, '_replicate')

    def pull(self, local_db, remote_db, remote_env, **kw):
        obj = pull_replication(local_db, remote_db, remote_env, **kw)
        return self.post(obj, '_replicate')

    def create_user(self, name, password, roles=None):
        doc = user_doc(name, password, roles)
        return self.put(doc, USERS_DB, doc['_id'])

    def get_user(self, name):
        return self.get(USERS_DB, USER_PREFIX + name)

    def delete_user(self, doc):
        return self.delete(USERS_DB, doc['_id'], rev=doc['_rev'])

    def create_session(self, name, password):
        """
        Start a cookie session as user *name*.

        The ``AuthSession`` cookie is kept in the `Context` cookie jar and is
        sent with every following request made through the same `Context`.
        """
        obj = {'name': name, 'password': password}
        return self.post(obj, '_session')

    def get_session(self):
        return self.get('_session')

    def delete_session(self):
        return self.delete('_session')


class Database(CouchBase):
    """
    All the `CouchBase` methods plus some database-specific niceties.

    For example:

    >>> db = Database('dmedia', 'http://localhost:5984/')
    >>> db
    Database('dmedia', 'http://localhost:5984/')
    >>> db.name
    'dmedia'
    >>> db.url
    'http://localhost:5984/'
    >>> db.basepath
    '/dmedia/'


    Niceties:

        * `Database.server()` - return a `Server` pointing at same URL
        * `Database.ensure()` - ensure the database exists
        * `Database.save(doc)` - save to CouchDB, update doc _id & _rev in place
        * `Database.save_many(docs)` - as above, but with a list of docs
        * `Database.get_many(doc_ids)` - retrieve many docs at once
        * `Database.view(design, view, **options)` - shortcut method, that's all
        * `Database.changes(**options)` - poll the changes feed
        * `Database.stream_changes(**options)` - follow the continuous feed
    """
    def __init__(self, name, env=None, ctx=None):
        super().__init__(env, ctx)
        self.name = name
        self.basepath += (quote(name, safe='') + '/')

    def __repr__(self):
        return '{}({!r}, {!r})'.format(
            self.__class__.__name__, self.name, self.url
        )

    def server(self):
        """
        Create a `Server` with the same `Context` as this `Database`.
        """
        return Server(ctx=self.ctx)

    def database(self, name):
        """
        Create a `Database` with the same `Context` as this `Database`.
        """
        return Database(name, ctx=self.ctx)

    def info(self):
        return self.get()

    def ensure(self):
        """
        Ensure the database exists.

        This method will attempt to create the database, and will handle the
        `PreconditionFailed` exception raised if the database already exists.
        """
        try:
            self.put(None)
            return True
        except PreconditionFailed:
            return False

    def compact(self, synchronous=False):
        log.info('compacting %r', self)
        self.post(None, '_compact')
        if synchronous:
            self.wait_for_compact()

    def wait_for_compact(self):
        if not self.get()['compact_running']:
            return
        start = time.monotonic()
        time.sleep(1)
        while self.get()['compact_running']:
            log.info('waiting compact to finish: %r', self)
            time.sleep(1)
        delta = time.monotonic() - start
        log.info('%.3f to compact %r', delta, self)

    def save(self, doc):
        """
        POST doc to CouchDB, update doc _rev in place.

        For example:

        >>> db = Database('foo')
        >>> doc = {'_id': 'bar'}
        >>> db.save(doc)  #doctest: +SKIP
        {'rev': '1-967a00dff5e02add41819138abb3284d', 'ok': True, 'id': 'bar'}
        >>> doc  #doctest: +SKIP
        {'_rev': '1-967a00dff5e02add41819138abb3284d', '_id': 'bar'}

        If *doc* has no _id, one generated using `random_id()` and added to
        *doc* in-place prior to making the request to CouchDB.
        """
        if '_id' not in doc:
            doc['_id'] = random_id()
        r = self.post(doc)
        doc['_rev'] = r['rev']
        return r

    def delete_doc(self, doc):
        """
        DELETE the current revision of *doc*, update doc _rev in place.
        """
        r = self.delete(doc['_id'], rev=doc['_rev'])
        doc['_rev'] = r['rev']
        return r

    def save_many(self, docs):
        """
        Bulk-save using non-atomic semantics, updates all _rev in-place.

        This method is similar `Database.save()`, except this method operates on
        a list of many docs at once.

        If there are conflicts, a `BulkConflict` exception will be raised, whose
        ``conflicts`` attribute will be a list of the documents for which there
        were conflicts.  Your request will *not* have modified these conflicting
        documents in the database, similar to `Database.save()`.

        However, all non-conflicting documents will have been saved and their
        _rev updated in-place.
        """
        for doc in filter(lambda d: '_id' not in d, docs):
            doc['_id'] = random_id()
        rows = self.post({'docs': docs}, '_bulk_docs')
        conflicts = []
        for (doc, row) in zip(docs, rows):
            assert doc['_id'] == row['id']
            if 'rev' in row:
                doc['_rev'] = row['rev']
            else:
                conflicts.append(doc)
        if conflicts:
            raise BulkConflict(conflicts, rows)
        return rows

    def delete_many(self, docs):
        """
        Delete a list of docs.
        """
        for doc in docs:
            doc['_deleted'] = True
            assert '_id' in doc
        return self.save_many(docs)

    def get_many(self, doc_ids):
        """
        Convenience method to retrieve multiple documents at once.

        As CouchDB has a rather large per-request overhead, retrieving multiple
        documents at once can greatly improve performance.
        """
        result = self.post({'keys': doc_ids}, '_all_docs', include_docs=True)
        return [row.get('doc') for row in result['rows']]

    def all_docs(self, **options):
        """
        Shortcut for ``/db/_all_docs``, POSTing when *keys* is provided.
        """
        if 'keys' in options:
            obj = {'keys': options.pop('keys')}
            return self.post(obj, '_all_docs', **options)
        return self.get('_all_docs', **options)

    def iter_all_docs(self, chunksize=50):
        """
        Iterate through all docs in the database without duplicates.
        """
        assert isinstance(chunksize, int)
        assert chunksize >= 10
        kw = {
            'limit': chunksize,
            'include_docs': True,
        }
        while True:
            rows = self.get('_all_docs', **kw)['rows']
            if not rows:
                break
            if rows[0]['id'] != kw.get('startkey_docid'):
                yield rows[0]['doc']
            for row in rows[1:]:
                yield row['doc']
            if len(rows) < chunksize:
                break
            kw['startkey_docid'] = rows[-1]['id']

    def put_attachment(self, doc, filename, data=None, content_type=None):
        """
        Inline the file *filename* into ``doc['_attachments']`` and save *doc*.

        The attachment is named after the basename of *filename*.  When *data*
        is None the file is read from disk, and when *content_type* is None it
        is guessed with `mime_type()`.
        """
        if data is None:
            with open(filename, 'rb') as fp:
                data = fp.read()
        if content_type is None:
            content_type = mime_type(filename)
        name = os.path.basename(filename)
        attachments = doc.setdefault('_attachments', {})
        attachments[name] = encode_attachment(Attachment(content_type, data))
        return self.save(doc)

    def purge(self, revs):
        """
        Permanently remove the revisions in *revs* (a doc ID => revs mapping).
        """
        return self.post(revs, '_purge')

    def get_security(self):
        return self.get('_security')

    def put_security(self, doc):
        return self.put(doc, '_security')

    def view(self, design, view, **options):
        """
        Shortcut for making a GET request to a view.

        No magic here, just saves you having to type "_design" and "_view" over
        and over.  This:

            ``Database.view(design, view, **options)``

        Is just a shortcut for:

            ``Database.get('_design', design, '_view', view, **options)``

        Unless *keys* is provided, in which case the keys are POSTed instead.
        """
        options.setdefault('reduce', False)
        if 'keys' in options:
            obj = {'keys': options.pop('keys')}
            return self.post(obj, '_design', design, '_view', view, **options)
        else:
            return self.get('_design', design, '_view', view, **options)

    def iter_view(self, design, view, key, chunksize=50):
        """
        Iterate through all docs in a view for a specific key.

        The docs with be yielded in sorted order by ``doc['_id']``.
        """
        assert isinstance(chunksize, int) and chunksize >= 10
        kw = {
            'key': key,
            'limit': chunksize,
            'include_docs': True,
        }
        while True:
            rows = self.view(design, view, **kw)['rows']
            if not rows:
                break
            if rows[0]['id'] != kw.get('startkey_docid'):
                yield rows[0]['doc']
            for row in rows[1:]:
                yield row['doc']
            if len(rows) < chunksize:
                break
            kw['startkey_docid'] = rows[-1]['id']

    def update(self, func, doc, *args):
        """
        Use *func* to update *doc* and then save, with one conflict retry.

        *func* is expected to apply an update to *doc* in-place.  It will be
        called like this::

            func(doc, *args)

        Then `Database.save()` is used to try to save the doc.  If there is a
        `Conflict`, the latest revision of doc is retrieved with `Database.get()`
        and *func* is called again, this time to update the new doc in-place::

            func(new, *args)

        Then the new doc is saved with `Database.save()`, but this time no
        special handling is done for a `Conflict`.  Only a single retry is
        attempted.

        In general, you'll want to use this pattern::

            doc = db.update(func, doc, 'foo', 'bar')
        """
        _id = doc['_id']
        func(doc, *args)
        try:
            self.save(doc)
            return doc
        except Conflict:
            log.warning('Conflict saving %s', _id)
        doc = self.get(_id)
        func(doc, *args)
        self.save(doc)
        return doc

    def changes(self, **options):
        """
        Poll ``/db/_changes`` once and return a `Changes` namedtuple.

        Use ``feed='longpoll'`` to have CouchDB hold the request open until
        there is at least one change.  A ``feed='continuous'`` option is
        dropped, because a continuous feed never produces a single response
        document; use `Database.stream_changes()` for that:

        >>> db = Database('foo')
        >>> db.changes(since='now', feed='longpoll', timeout=5000)  #doctest: +SKIP
        Changes(last_seq='12-g1AAAA...', results=[], pending=0)

        """
        result = self.get('_changes', **poll_options(options))
        return decode_changes(result)

    def stream_changes(self, **options):
        """
        Follow the continuous change feed, returning a `ChangeFeed`.

        The *feed* option is always forced to ``'continuous'``.  Any error
        setting up the feed (bad options, an HTTP error status, or a failed
        connection) is raised here, before the feed exists.

        The socket read timeout is derived from *heartbeat*, or else from
        *timeout*, with `stream_timeout()`, so a quiet feed is not cut off
        by the shorter `Context` timeout.  For example:

        >>> db = Database('foo')
        >>> with db.stream_changes(since='now', heartbeat=10000) as feed:  #doctest: +SKIP
        ...     for event in feed:
        ...         print(event.id, event.revs)
        ...

        """
        options = continuous_options(options)
        session = self.ctx.new_session()
        try:
            response = self.request('GET', ('_changes',), options,
                stream_session=session,
                timeout=stream_timeout(options, self.ctx.timeout),
            )
        except Exception:
            session.close()
            raise
        log.info('streaming changes from %r since %r', self, options.get('since'))
        return ChangeFeed(response, session, since=options.get('since'))
