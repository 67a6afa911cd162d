# -*- test-case-name: oidchannel.test.test_channel -*-
"""The protocol message channel shared by both sides of the handshake.

A L{Channel} moves L{Message<oidchannel.message.Message>} objects over
the two OpenID transports:

    - direct: the Relying Party POSTs a request to the Provider and reads
      a key-value form reply (L{Channel.send})

    - indirect: a message travels through the user agent, either as a
      redirect or as an auto-submitting form (L{Channel.redirect})

Incoming messages go through L{Channel.read}, which classifies them and,
for assertions, checks the signature and the nonce before anything else
gets to see them.  L{Handshake} keeps track of how far one handshake has
progressed so that messages arriving out of order are refused.
"""
import logging

from oidchannel import fetchers
from oidchannel import kvform
from oidchannel import message as protocol
from oidchannel.errors import ProtocolError, MalformedMessage, \
     UnsupportedVersion, InvalidSignature, AssociationNotFound, \
     ReplayedNonce, ExpiredNonce, CommunicationFailure, OutOfSequence
from oidchannel.message import Message, OPENID_NS, OPENID2_NS, BARE_NS
from oidchannel import oidutil
from oidchannel.settings import Settings
from oidchannel.store import nonce

__all__ = [
    'Channel',
    'Handshake',
    'IndirectResponse',
    'ServerError',
    ]

# The query parameter the Relying Party adds to its return_to URL when
# talking OpenID 1, which has no nonce of its own.  It must not start
# with 'openid.'.
NONCE_ARG = 'rp_nonce'

# Kinds that are only believed after their signature and nonce check out
SIGNED_KINDS = (protocol.POSITIVE_ASSERTION, protocol.EXTENSION_RESPONSE)

ASSOCIATE = 'associate'
CHECKID = 'checkid'
ASSERTION = 'assertion'

PHASES = [ASSOCIATE, CHECKID, ASSERTION]


class ServerError(ProtocolError):
    """The Provider answered a direct request with an error message.

    @ivar error_text: the human readable C{openid.error}
    @ivar error_code: the C{openid.error_code}, if any
    """

    def __init__(self, error_text, error_code, message):
        super().__init__(error_text, message)
        self.error_text = error_text
        self.error_code = error_code

    @classmethod
    def fromMessage(cls, message):
        """Generate a ServerError instance, extracting the error text
        and the error code from the message."""
        error_text = message.getArg(
            OPENID_NS, 'error', '<no error message supplied>')
        error_code = message.getArg(OPENID_NS, 'error_code')
        return cls(error_text, error_code, message)


class Handshake(object):
    """Phase tracker for one handshake.

    The phases are C{associate}, C{checkid} and C{assertion}, in that
    order.  Association is optional and may be repeated (after a
    downgrade), every other phase happens exactly once.

    The tracker only holds the name of the current phase, so it is
    stored in a session as C{handshake.phase} and recreated with
    C{Handshake(phase)}.
    """

    def __init__(self, phase=None):
        if phase is not None and phase not in PHASES:
            raise ValueError('Unknown handshake phase: %r' % (phase,))
        self.phase = phase

    def advance(self, phase):
        """Move on to C{phase}.

        @raises OutOfSequence: if C{phase} can't follow the current one
        """
        if phase not in PHASES:
            raise ValueError('Unknown handshake phase: %r' % (phase,))

        current = self.phase
        if current is not None:
            if phase == current and phase != ASSOCIATE:
                raise OutOfSequence('Duplicate %s message' % (phase,))
            if PHASES.index(phase) < PHASES.index(current):
                raise OutOfSequence(
                    '%s message after %s' % (phase, current))

        if phase == ASSERTION and current != CHECKID:
            raise OutOfSequence('Assertion without an authentication request')

        self.phase = phase

    def __repr__(self):
        return '<%s phase=%s>' % (self.__class__.__name__, self.phase)


class IndirectResponse(object):
    """A message on its way through the user agent.

    Delivering it is up to the application: send a redirect to
    L{redirectURL} or, when L{use_post} is set, render L{htmlMarkup}.

    @ivar url: where the message goes
    @ivar message: the L{Message<oidchannel.message.Message>} itself
    @ivar use_post: the redirect URL would be too long, the message has
        to be POSTed from a form
    """

    def __init__(self, url, message, use_post=False):
        self.url = url
        self.message = message
        self.use_post = use_post

    @property
    def fields(self):
        return self.message.toPostArgs()

    def redirectURL(self):
        return self.message.toURL(self.url)

    def formMarkup(self, form_tag_attrs=None):
        return self.message.toFormMarkup(self.url, form_tag_attrs)

    def htmlMarkup(self, form_tag_attrs=None):
        """An HTML page that submits the form as soon as it is loaded."""
        return oidutil.autoSubmitHTML(
            self.message.toFormElement(self.url, form_tag_attrs))

    def __repr__(self):
        return '<%s %s use_post=%s>' % (
            self.__class__.__name__, self.url, self.use_post)


class Channel(object):
    """
    @ivar store: association and nonce store, see
        L{OpenIDStore<oidchannel.store.interface.OpenIDStore>}
    @ivar settings: a L{Settings<oidchannel.settings.Settings>}
    @ivar transport: callable with the signature of
        L{fetchers.fetch<oidchannel.fetchers.fetch>}
    """

    def __init__(self, store, settings=None, transport=None):
        if store is None:
            raise ValueError('A store is required')
        self.store = store
        self.settings = settings if settings is not None else Settings()
        self.transport = transport if transport is not None else fetchers.fetch

    def decode(self, args, expected=None):
        """Parse an incoming message.

        @see: L{oidchannel.message.decode}
        """
        message = protocol.decode(
            args, expected, self.settings.openid1_aliases)
        if self.settings.require_openid2 and message.isOpenID1():
            raise UnsupportedVersion('OpenID 1 messages are not accepted',
                                     message)
        return message

    def send(self, message, server_url, expected=None, handshake=None):
        """Make a direct request and return the Provider's reply.

        @param expected: the reply kind(s) the request calls for

        @raises CommunicationFailure: no reply could be obtained, or the
            reply had an unexpected HTTP status
        @raises ServerError: the Provider replied with an error message
        """
        if (handshake is not None and
            message.getArg(OPENID_NS, 'mode') == 'associate'):
            handshake.advance(ASSOCIATE)

        headers = {
            'User-Agent': self.settings.user_agent,
            'Content-Type': 'application/x-www-form-urlencoded',
            }
        logging.info('Sending %s request to %s' % (
            message.getArg(OPENID_NS, 'mode'), server_url))
        response = self.transport(
            server_url, body=message.toURLEncoded(), headers=headers)

        if response.error is not None or response.status is None:
            raise CommunicationFailure(
                'Direct request to %s failed: %s' % (server_url, response.error),
                message)

        if response.status == 400:
            raise ServerError.fromMessage(self._parseReply(response.body))
        elif response.status != 200:
            raise CommunicationFailure(
                'Direct request to %s returned HTTP status %s'
                % (server_url, response.status), message)

        if expected is not None:
            if isinstance(expected, str):
                expected = (expected,)
            expected = tuple(expected) + (protocol.ERROR,)

        reply = self.decode(self._parseReply(response.body), expected)
        if reply.kind() == protocol.ERROR:
            raise ServerError.fromMessage(reply)
        return reply

    def _parseReply(self, body):
        try:
            return Message.fromKVForm(body)
        except kvform.KVFormError as why:
            raise MalformedMessage('Unparseable direct response: %s' % (why,))

    def redirect(self, message, url):
        """Prepare an indirect message for the user agent.

        @rtype: L{IndirectResponse}
        """
        use_post = False
        if message.isOpenID2():
            use_post = len(message.toURL(url)) > self.settings.max_redirect_url
        elif len(message.toURL(url)) > protocol.OPENID1_URL_LIMIT:
            logging.warning('OpenID 1 redirect to %s is longer than %d bytes'
                            % (url, protocol.OPENID1_URL_LIMIT))
        return IndirectResponse(url, message, use_post)

    def sequence(self, message, handshake):
        """Advance C{handshake} to the phase C{message} belongs to.

        @raises OutOfSequence: if the message doesn't fit
        """
        message_kind = message.kind()
        if message_kind in (protocol.CHECKID_REQUEST,
                            protocol.EXTENSION_REQUEST):
            handshake.advance(CHECKID)
        elif message_kind in (protocol.POSITIVE_ASSERTION,
                              protocol.EXTENSION_RESPONSE,
                              protocol.NEGATIVE_ASSERTION):
            try:
                handshake.advance(ASSERTION)
            except OutOfSequence as why:
                why.message = message
                raise

    def read(self, args, expected=None, server_url=None, handshake=None):
        """Decode an incoming message and verify it if it is an assertion.

        @param server_url: the Provider endpoint the assertion should
            come from.  OpenID 2 assertions name it themselves.

        @rtype: L{Message<oidchannel.message.Message>}
        """
        message = self.decode(args, expected)
        if handshake is not None:
            self.sequence(message, handshake)

        if message.kind() in SIGNED_KINDS:
            if server_url is None:
                server_url = message.getArg(OPENID2_NS, 'op_endpoint')
                if server_url is None:
                    raise MalformedMessage(
                        'No Provider endpoint to verify the assertion with',
                        message)
            self.verify(message, server_url)
            self.checkNonce(message, server_url)
        return message

    def verify(self, message, server_url):
        """Check the signature of an assertion.

        @raises AssociationNotFound: the association is unknown and
            stateless verification is disabled
        @raises InvalidSignature: the signature doesn't match, or the
            Provider didn't confirm it
        """
        assoc_handle = message.getArg(OPENID_NS, 'assoc_handle')
        if not assoc_handle:
            raise MalformedMessage('Assertion has no assoc_handle', message)

        assoc = self.store.getAssociation(server_url, assoc_handle)
        if assoc is None:
            if not self.settings.stateless_fallback:
                raise AssociationNotFound(
                    'No association %r with %s' % (assoc_handle, server_url),
                    message)
            # It's not an association we know about.  Stateless mode is
            # our only possible path for recovery.
            self._checkAuth(message, server_url)
        elif not assoc.checkMessageSignature(message):
            raise InvalidSignature('Bad signature', message)

    def _checkAuth(self, message, server_url):
        logging.info('Using OpenID check_authentication')
        request = self._createCheckAuthRequest(message)
        try:
            response = self.send(
                request, server_url, protocol.CHECK_AUTH_RESPONSE)
        except CommunicationFailure:
            raise
        except ProtocolError as why:
            logging.error('check_authentication with %s failed: %s'
                          % (server_url, why))
            raise InvalidSignature(
                'check_authentication failed: %s' % (why,), message)
        self._processCheckAuthResponse(response, server_url, message)

    def _createCheckAuthRequest(self, message):
        """Generate a check_authentication request message given an
        id_res message.
        """
        signed = message.getArg(OPENID_NS, 'signed')
        if not signed:
            raise InvalidSignature('Assertion has no signed list', message)
        for k in signed.split(','):
            if message.getAliasedArg(k) is None:
                raise InvalidSignature('Missing signed field %r' % (k,),
                                       message)

        check_auth_message = message.copy()
        check_auth_message.setArg(OPENID_NS, 'mode', 'check_authentication')
        return check_auth_message

    def _processCheckAuthResponse(self, response, server_url, message):
        """Process the response message from a check_authentication
        request, invalidating associations if requested.
        """
        invalidate_handle = response.getArg(OPENID_NS, 'invalidate_handle')
        if invalidate_handle is not None:
            logging.info(
                'Received "invalidate_handle" from server %s' % (server_url,))
            self.store.removeAssociation(server_url, invalidate_handle)

        if response.getArg(OPENID_NS, 'is_valid') != 'true':
            logging.error('Server responds that checkAuth call is not valid')
            raise InvalidSignature(
                'Server denied check_authentication', message)

    def checkNonce(self, message, server_url):
        """Record the nonce of an assertion.

        OpenID 2 assertions carry the Provider's C{response_nonce};
        OpenID 1 ones the one the Relying Party put into its return_to.

        @raises ReplayedNonce: the nonce has been seen before
        @raises ExpiredNonce: the nonce is too old (or too new)
        """
        if message.isOpenID1():
            nonce_string = message.getArg(BARE_NS, NONCE_ARG)
            server_url = ''
        else:
            nonce_string = message.getArg(OPENID2_NS, 'response_nonce')

        if nonce_string is None:
            raise MalformedMessage('Nonce missing from response', message)

        try:
            timestamp, salt = nonce.split(nonce_string)
        except ValueError as why:
            raise MalformedMessage('Malformed nonce: %s' % (why,), message)

        try:
            self.store.useNonce(server_url, timestamp, salt)
        except (ReplayedNonce, ExpiredNonce) as why:
            why.message = message
            raise

    def issueNonce(self, key):
        """Create a nonce and record it under C{key} so that the same
        nonce is never issued twice."""
        while True:
            nonce_string = nonce.mkNonce()
            timestamp, salt = nonce.split(nonce_string)
            try:
                self.store.useNonce(key, timestamp, salt)
            except ReplayedNonce:
                continue
            return nonce_string

    def prepare(self, message, signatory, assoc_handle=None):
        """Stamp and sign an outgoing assertion.

        Messages of other kinds are returned as they are.

        @param signatory: a L{Signatory<oidchannel.server.Signatory>}
        @param assoc_handle: the handle the Relying Party asked to use
        """
        if message.kind() not in SIGNED_KINDS:
            return message

        if message.isOpenID2() and not message.hasKey(OPENID2_NS,
                                                      'response_nonce'):
            message = message.copy()
            message.setArg(OPENID2_NS, 'response_nonce',
                           self.issueNonce(signatory.nonce_key))
        return signatory.sign(message, assoc_handle)

    def allowsPlaintext(self, url):
        """May a no-encryption association be used with this endpoint?"""
        return (self.settings.allow_no_encryption and
                url is not None and url.lower().startswith('https:'))
