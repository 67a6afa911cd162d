# -*- test-case-name: oidchannel.test.test_realm -*-
"""
This module contains the C{L{Realm}} class, which helps handle realm
checking.  For most uses, the C{L{Realm.checkURL}} method of the
class is all that's needed: the Provider uses it to refuse positive
assertions whose return_to lies outside of the realm the Relying
Party announced.

A realm is a URL pattern.  Its host may start with C{*.} to match any
subdomain, and its path matches every path below it::

    http://*.example.com/app/  matches  http://www.example.com/app/login
"""
import re
import urllib.parse

from oidchannel import urinorm

__all__ = [
    'Realm',
    ]

PORT_RE = re.compile(r'\d+$')


def _parseURL(url):
    try:
        url = urinorm.urinorm(url)
    except ValueError:
        return None
    proto, netloc, path, params, query, frag = urllib.parse.urlparse(url)
    path = urllib.parse.urlunparse(('', '', path or '/', params, query, frag))

    host, _, port = netloc.partition(':')
    if port and not PORT_RE.match(port):
        return None

    return proto, host.lower(), port, path


class Realm(object):
    """
    This class represents an OpenID realm (trust root).  Instances are
    created with L{parse}.
    """

    def __init__(self, unparsed, proto, wildcard, host, port, path):
        self.unparsed = unparsed
        self.proto = proto
        self.wildcard = wildcard
        self.host = host
        self.port = port
        self.path = path

    def isSane(self):
        """
        This method checks the to see if a realm is sane: not
        matching every host under a public suffix such as
        C{*.com} or C{*.co.uk}.

        @return: Whether the realm is sane

        @rtype: C{bool}
        """
        if self.host == 'localhost':
            return True

        host_parts = self.host.split('.')
        if self.wildcard:
            del host_parts[0]

        # An absolute domain name ends with an empty label
        if host_parts and not host_parts[-1]:
            del host_parts[-1]

        if len(host_parts) < 2 or '' in host_parts:
            return False

        tld = host_parts[-1]
        if self.wildcard and len(tld) == 2 and len(host_parts[-2]) <= 3:
            return len(host_parts) > 2

        return True

    def validateURL(self, url):
        """
        Validates a URL against this realm.

        @param url: The URL to check

        @type url: C{str}

        @return: Whether the given URL is within this realm.

        @rtype: C{bool}
        """
        url_parts = _parseURL(url)
        if url_parts is None:
            return False

        proto, host, port, path = url_parts

        if proto != self.proto or port != self.port or '*' in host:
            return False

        if not self.wildcard:
            if host != self.host:
                return False
        elif not host.endswith(self.host) and ('.' + host) != self.host:
            return False

        if path != self.path:
            path_len = len(self.path)
            if path[:path_len] != self.path:
                return False

            # Partial path segments don't count: /app doesn't cover
            # /application
            if '?' in self.path:
                allowed = '&'
            else:
                allowed = '?/'

            return self.path[-1] in allowed or path[path_len] in allowed

        return True

    @classmethod
    def parse(cls, realm):
        """
        This method creates a C{L{Realm}} instance from the given
        input, if possible.

        @param realm: This is the realm to parse into a C{L{Realm}}
            object.

        @type realm: C{str}

        @return: A C{L{Realm}} instance if realm parses as a realm,
            C{None} otherwise.

        @rtype: C{NoneType} or C{L{Realm}}
        """
        url_parts = _parseURL(realm)
        if url_parts is None:
            return None

        proto, host, port, path = url_parts

        if '#' in path:
            return None

        # The wildcard is only allowed as the first label
        if host.find('*', 1) != -1:
            return None

        if host.startswith('*'):
            if len(host) > 1 and host[1] != '.':
                return None
            host = host[1:]
            wildcard = True
        else:
            wildcard = False

        return cls(realm, proto, wildcard, host, port, path)

    @classmethod
    def checkSanity(cls, realm_string):
        """Is this realm both parseable and sane?"""
        realm = cls.parse(realm_string)
        if realm is None:
            return False
        return realm.isSane()

    @classmethod
    def checkURL(cls, realm, url):
        """Quick way to check a URL against a realm.

        @rtype: C{bool}
        """
        parsed = cls.parse(realm)
        return parsed is not None and parsed.validateURL(url)

    def __repr__(self):
        return "Realm(%r, %r, %r, %r, %r, %r)" % (
            self.unparsed, self.proto, self.wildcard, self.host, self.port,
            self.path)

    def __str__(self):
        return repr(self)
