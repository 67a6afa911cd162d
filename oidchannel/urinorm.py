'''
URI normalization (RFC 3986 section 6) as used when comparing return_to
URLs and realms.
'''
import re
import urllib.parse


ILLEGAL_CHAR_RE = re.compile(r"[^-A-Za-z0-9:/?#[\]@!$&'()*+,;=._~%]")
HOST_PORT_RE = re.compile(r'^[A-Za-z0-9\.]+(:\d+)?(/|$)')
PCT_ENCODED_RE = re.compile(r'%([0-9A-Fa-f]{2})')
UNRESERVED = frozenset(
    '-._~0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz')
DEFAULT_PORTS = {'http': '80', 'https': '443'}


def _normalize_escape(match):
    char = chr(int(match.group(1), 16))
    if char in UNRESERVED:
        return char
    return match.group().upper()


def remove_dot_segments(path):
    '''
    RFC 3986 section 5.2.4
    '''
    output = []
    while path:
        if path.startswith('/./'):
            path = path[2:]
        elif path == '/.':
            path = '/'
        elif path.startswith('/../') or path == '/..':
            path = '/' + path[4:]
            if output:
                output.pop()
        else:
            end = path.find('/', 1 if path.startswith('/') else 0)
            if end == -1:
                end = len(path)
            output.append(path[:end])
            path = path[end:]
    return ''.join(output)


def _quote(part):
    # Only non-ASCII characters get escaped here, the rest is
    # checked against ILLEGAL_CHAR_RE afterwards.
    return urllib.parse.quote(part, safe=''.join(map(chr, range(256))))


def _idna_host(authority):
    # idna rejects empty labels, so encode label by label
    return '.'.join(
        label.encode('idna').decode('ascii') for label in authority.split('.'))


def urinorm(uri):
    '''
    Normalize a URI

    @raises ValueError: if the URI isn't an absolute http(s) URI or
        contains characters that can't appear in one
    '''
    # urlparse takes 'host:port' for 'scheme:path'
    if HOST_PORT_RE.match(uri):
        uri = 'http://' + uri

    parts = urllib.parse.urlparse(uri)
    scheme = parts.scheme.lower() or 'http'
    authority = parts.netloc.lower()
    if not authority or scheme not in DEFAULT_PORTS:
        raise ValueError('Not an absolute HTTP or HTTPS URI: %s' % uri)

    authority = _idna_host(authority)
    host, sep, port = authority.partition(':')
    if sep and (not port or port == DEFAULT_PORTS[scheme]):
        authority = host

    path, params, query, fragment = (
        _quote(p) for p in (parts.path, parts.params, parts.query, parts.fragment))
    path = remove_dot_segments(PCT_ENCODED_RE.sub(_normalize_escape, path)) or '/'

    uri = urllib.parse.urlunparse(
        (scheme, authority, path, params, query, fragment))
    illegal = ILLEGAL_CHAR_RE.search(uri)
    if illegal:
        raise ValueError('Illegal characters in URI: %r at position %s' %
                         (illegal.group(), illegal.start()))
    return uri
