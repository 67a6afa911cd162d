"""
This module contains the definition of the C{L{OpenIDStore}}
interface.
"""


class OpenIDStore(object):
    """
    This is the interface for the store objects the channel uses.  It
    is a single class that provides all of the persistence mechanisms
    that the Relying Party and the Provider need.  It should be passed
    into the C{L{Consumer<oidchannel.consumer.Consumer>}} or
    C{L{Server<oidchannel.server.Server>}} constructor.

    Implementations must be safe for use by several handshakes at
    once: a C{getAssociation} racing a cleanup returns either the live
    association or C{None}.
    """

    def storeAssociation(self, server_url, association):
        """
        This method puts a C{L{Association
        <oidchannel.association.Association>}} object into storage,
        retrievable by server URL and handle.

        @param server_url: The URL of the identity server that this
            association is with.  Because of the way the server
            portion of the library uses this interface, don't assume
            there are any limitations on the character set of the
            input string.  In particular, expect to see unescaped
            non-url-safe characters in the server_url field.

        @type server_url: C{str}

        @param association: The C{L{Association
            <oidchannel.association.Association>}} to store.

        @type association: C{L{Association
            <oidchannel.association.Association>}}

        @return: C{None}

        @rtype: C{NoneType}
        """
        raise NotImplementedError

    def getAssociation(self, server_url, handle=None):
        """
        This method returns an C{L{Association
        <oidchannel.association.Association>}} object from storage
        that matches the server URL and, if specified, handle. It
        returns C{None} if no such association is found or if the
        matching association is expired.

        If no handle is specified, the store may return any
        association which matches the server URL.  If multiple
        associations are valid, the recommended return value for this
        method is the one most recently issued.

        @param server_url: The URL of the identity server to get the
            association for.

        @type server_url: C{str}

        @param handle: This optional parameter is the handle of the
            specific association to get.  If no specific handle is
            provided, any valid association matching the server URL is
            returned.

        @type handle: C{str} or C{NoneType}

        @return: The C{L{Association
            <oidchannel.association.Association>}} for the given identity
            server.

        @rtype: C{L{Association <oidchannel.association.Association>}} or
            C{NoneType}
        """
        raise NotImplementedError

    def removeAssociation(self, server_url, handle):
        """
        This method removes the matching association if it's found,
        and returns whether the association was removed or not.

        @return: Returns whether or not the given association existed.

        @rtype: C{bool} or C{int}
        """
        raise NotImplementedError

    def useNonce(self, server_url, timestamp, salt, now=None):
        """Called when using a nonce.

        This method should record the nonce so that it can't be used
        again.

        @param server_url: The URL of the server from which the nonce
            originated.

        @type server_url: C{str}

        @param timestamp: The time that the nonce was created (to the
            nearest second), in seconds since January 1 1970 UTC.
        @type timestamp: C{int}

        @param salt: A random string that makes two nonces from the
            same server issued during the same second unique.
        @type salt: str

        @raises ReplayedNonce: the nonce has been used before
        @raises ExpiredNonce: the timestamp is further than
            C{L{SKEW<oidchannel.store.nonce.SKEW>}} from now
        """
        raise NotImplementedError

    def cleanupNonces(self, now=None):
        """Remove expired nonces from the store.

        Discards any nonce from storage that is old enough that its
        timestamp would not pass L{useNonce}.

        @return: the number of nonces expired.
        @returntype: int
        """
        raise NotImplementedError

    def cleanupAssociations(self, now=None):
        """Remove expired associations from the store.

        @return: the number of associations expired.
        @returntype: int
        """
        raise NotImplementedError

    def cleanup(self, now=None):
        """Shortcut for C{L{cleanupNonces}()}, C{L{cleanupAssociations}()}.

        @return: tuple of the number of expired nonces and the number of
            expired associations.
        """
        return self.cleanupNonces(now), self.cleanupAssociations(now)
