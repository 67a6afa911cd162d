'''
Wrapper around urlopen providing default parameters and safety checkings.

The wrapper never raises for network trouble: every outcome, including
the ones where no HTTP response could be obtained, comes back as an
L{HTTPResponse} value for the channel to interpret.
'''
import collections
import logging
import sys
import urllib.error
import urllib.parse
import urllib.request

import oidchannel


USER_AGENT = 'oidchannel/%s (%s) Python-urllib/%s' % (
    oidchannel.__version__,
    sys.platform,
    urllib.request.__version__,
)

HTTPResponse = collections.namedtuple(
    'HTTPResponse', 'url status headers body error')
HTTPResponse.__doc__ = '''Outcome of one HTTP exchange.

C{error} is set and C{status} is C{None} when no HTTP response was
obtained at all.  Error statuses (4xx, 5xx) are ordinary responses.
'''


def fetch(url, body=None, headers=None):
    '''
    POST C{body} to C{url} (or GET it when there's no body).

    @rtype: L{HTTPResponse}
    '''
    if urllib.parse.urlparse(url).scheme not in ('http', 'https'):
        return HTTPResponse(url, None, {}, b'', 'Bad URL scheme: %r' % (url,))

    headers = dict(headers or {})
    headers.setdefault('User-Agent', USER_AGENT)
    if isinstance(body, str):
        body = body.encode('utf-8')

    request = urllib.request.Request(url, data=body, headers=headers)
    try:
        response = urllib.request.urlopen(request)
    except urllib.error.HTTPError as e:
        return HTTPResponse(url, e.code, dict(e.headers or {}), e.read(), None)
    except (urllib.error.URLError, OSError) as e:
        logging.warning('Fetching %s failed: %s' % (url, e))
        return HTTPResponse(url, None, {}, b'', str(e))

    try:
        return HTTPResponse(
            response.url, response.status, dict(response.headers),
            response.read(), None)
    finally:
        response.close()
