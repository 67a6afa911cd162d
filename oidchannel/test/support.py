import urllib.request
import urllib.error
import urllib.parse
import io
from logging.handlers import BufferingHandler
import logging

from oidchannel import fetchers
from oidchannel import message
from oidchannel.errors import ProtocolError


class TestHandler(BufferingHandler):
    def __init__(self, messages):
        BufferingHandler.__init__(self, 0)
        self.messages = messages

    def shouldFlush(self):
        return False

    def emit(self, record):
        self.messages.append(record.__dict__)


class OpenIDTestMixin(object):
    def failUnlessOpenIDValueEquals(self, msg, key, expected, ns=None):
        if ns is None:
            ns = message.OPENID_NS

        actual = msg.getArg(ns, key)
        error_format = 'Wrong value for openid.%s: expected=%s, actual=%s'
        error_message = error_format % (key, expected, actual)
        self.assertEqual(expected, actual, error_message)

    def failIfOpenIDKeyExists(self, msg, key, ns=None):
        if ns is None:
            ns = message.OPENID_NS

        actual = msg.getArg(ns, key)
        error_message = 'openid.%s unexpectedly present: %s' % (key, actual)
        self.assertFalse(actual is not None, error_message)


class CatchLogs(object):
    def setUp(self):
        self.messages = []
        root_logger = logging.getLogger()
        self.old_log_level = root_logger.getEffectiveLevel()
        root_logger.setLevel(logging.DEBUG)

        self.handler = TestHandler(self.messages)
        formatter = logging.Formatter("%(message)s [%(asctime)s - %(name)s - %(levelname)s]")
        self.handler.setFormatter(formatter)
        root_logger.addHandler(self.handler)

    def tearDown(self):
        root_logger = logging.getLogger()
        root_logger.removeHandler(self.handler)
        root_logger.setLevel(self.old_log_level)

    def failUnlessLogMatches(self, *prefixes):
        """
        Check that the log messages contained in self.messages have
        prefixes in *prefixes.  Raise AssertionError if not, or if the
        number of prefixes is different than the number of log
        messages.
        """
        messages = [r['msg'] for r in self.messages]
        assert len(prefixes) == len(messages), \
               "Expected log prefixes %r, got %r" % (prefixes,
                                                     messages)

        for prefix, message in zip(prefixes, messages):
            assert message.startswith(prefix), \
                   "Expected log prefixes %r, got %r" % (prefixes,
                                                         messages)

    def failUnlessLogEmpty(self):
        self.failUnlessLogMatches()

    def failUnlessLogged(self, prefix):
        """Some log message starts with prefix."""
        messages = [r['msg'] for r in self.messages]
        assert any(m.startswith(prefix) for m in messages), \
               "Expected a log message starting with %r, got %r" % (
                   prefix, messages)


class HTTPResponse:
    def __init__(self, url, status, headers=None, body=None):
        self.url = url
        self.status = status
        self.headers = headers or {}
        self._body = io.BytesIO(body)
        self.closed = False

    def read(self, *args):
        return self._body.read(*args)

    def close(self):
        self.closed = True


def gentests(cls):
    '''
    TestCase class decorator for data-driven tests.

    Reads a list of (name, args) pairs from cls.data and generates a separate
    test method named 'test_<name>' for each pair. The test method would call
    the method '_test' defined in a class to perform actual testing, passing it
    the args.
    '''
    for name, args in cls.data:
        def g(*args):
            def test_method(self):
                self._test(*args)
            return test_method
        method = g(*args)
        method.__name__ = 'test_' + name
        setattr(cls, method.__name__, method)
    return cls


def urlopen(request, data=None):
    if isinstance(request, str):
        request = urllib.request.Request(request)
    # track the last call arguments
    urlopen.request = request
    urlopen.data = data

    url = request.get_full_url()
    parts = urllib.parse.urlparse(url)
    if parts.netloc.split(':')[0] != 'unittest':
        raise urllib.error.URLError('Wrong host: %s' % parts.netloc)
    path = parts.path.lstrip('/')
    if not path.isdigit():
        raise urllib.error.HTTPError(url, 404, '%s not found' % path, {}, io.BytesIO())

    status = int(path)
    if 400 <= status:
        body = b'error:Requested status %d\n' % status
        raise urllib.error.HTTPError(url, status, 'Requested status: %s' % status, {}, io.BytesIO(body))
    body = b'is_valid:true\n'

    headers = {
        'Server': 'Urlopen-Mock',
        'Date': 'Mon, 21 Jul 2014 19:52:42 GMT',
        'Content-type': 'text/plain',
        'Content-length': len(body),
    }
    response = HTTPResponse(url, status, headers, body)
    urlopen.response = response
    return response


def transportReturning(status, reply=b'', error=None):
    """A transport that answers every request the same way."""
    def transport(url, body=None, headers=None):
        transport.calls.append((url, body, headers))
        return fetchers.HTTPResponse(url, status, {}, reply, error)
    transport.calls = []
    return transport


class ProviderTransport(object):
    """Routes direct requests into an in-process Server instead of the
    network, the way a web framework would hand them to it."""

    def __init__(self, server):
        self.server = server
        self.requests = []

    def __call__(self, url, body=None, headers=None):
        if isinstance(body, bytes):
            body = body.decode('utf-8')
        query = dict(urllib.parse.parse_qsl(body or '', keep_blank_values=True))
        self.requests.append(query)

        try:
            request = self.server.decodeRequest(query)
            response = self.server.handleRequest(request)
            web_response = self.server.encodeResponse(response)
        except ProtocolError as why:
            web_response = self.server.encodeError(why)

        return fetchers.HTTPResponse(
            url, web_response.code, web_response.headers, web_response.body,
            None)

    def modes(self):
        return [query.get('openid.mode') for query in self.requests]


def queryFromURL(url):
    """The arguments of a redirect as the receiving side sees them."""
    return dict(urllib.parse.parse_qsl(urllib.parse.urlparse(url).query))
