# -*- test-case-name: oidchannel.test.test_consumer -*-
"""The Relying Party half of the handshake.

An application needs a store (see L{oidchannel.store.interface}) and a
dict-like session per user agent.  A login goes like this:

    1. The user names an identifier.  Turning it into a
       L{Service<oidchannel.service.Service>} is the job of a discovery
       callable handed to the L{Consumer}; applications that already
       know the Provider call L{Consumer.beginWithoutDiscovery}.

    2. L{Consumer.begin} shares a secret with the Provider unless a
       live one is already stored, and returns an L{AuthRequest}.
       Extensions are added to it before it is rendered as a redirect
       or an auto-submitting form.

    3. The Provider sends the user agent back to the return_to URL,
       where L{Consumer.complete} decides what the response is worth.


Handshake state
===============

    Everything the Relying Party has to remember between the two
    requests lives in the session under a single key, as plain strings
    and dicts.  L{Consumer.state} is one of:

        - C{idle}: nothing started
        - C{request_built}: L{begin<Consumer.begin>} is running
        - C{associated} / C{stateless}: the request is ready, with or
          without an association
        - C{awaiting_response}: the request has been rendered
        - C{authenticated}, C{extensions_only}, C{cancelled},
          C{setup_needed}, C{failed}: the response has been processed

    L{Consumer.abandon} drops the key, which cancels the handshake.
"""
import logging
import urllib.parse

from oidchannel import cryptutil
from oidchannel import message as protocol
from oidchannel import oidutil
from oidchannel import urinorm
from oidchannel.association import Association, default_negotiator, \
     SessionNegotiator, getSecretSize
from oidchannel.channel import Channel, Handshake, ServerError, NONCE_ARG, \
     CHECKID
from oidchannel.dh import DiffieHellman
from oidchannel.errors import ProtocolError, MalformedMessage, \
     UnsupportedVersion, AssociationNotFound, CommunicationFailure, \
     OutOfSequence
from oidchannel.message import Message, OPENID_NS, OPENID2_NS, \
     IDENTIFIER_SELECT, no_default, BARE_NS
from oidchannel.service import Service, DiscoveryFailure
from oidchannel.store.nonce import mkNonce

IDLE = 'idle'
REQUEST_BUILT = 'request_built'
ASSOCIATED = 'associated'
STATELESS = 'stateless'
AWAITING_RESPONSE = 'awaiting_response'
AUTHENTICATED = 'authenticated'
FAILED = 'failed'
EXTENSIONS_ONLY = 'extensions_only'
CANCELLED = 'cancelled'
SETUP_NEEDED = 'setup_needed'

SUCCESS = 'success'
CANCEL = 'cancel'

# Message kinds a return_to URL may receive
RESPONSE_KINDS = (
    protocol.POSITIVE_ASSERTION,
    protocol.EXTENSION_RESPONSE,
    protocol.NEGATIVE_ASSERTION,
    protocol.ERROR,
    )

# Fields an assertion must not carry unsigned, by protocol version
_OPENID2_SIGNED = ('return_to', 'response_nonce', 'claimed_id', 'identity',
                   'assoc_handle', 'op_endpoint')
_OPENID1_SIGNED = ('return_to', 'identity')


def validate_fields(message):
    '''
    Raise AuthenticationError when the assertion carries one of the
    fields it vouches with outside of its signed list.
    '''
    required = _OPENID2_SIGNED if message.isOpenID2() else _OPENID1_SIGNED
    signed = set(message.getArg(OPENID_NS, 'signed', '').split(','))
    unsigned = [name for name in required
                if message.hasKey(OPENID_NS, name) and name not in signed]
    if unsigned:
        raise AuthenticationError(
            'Unsigned fields: %s' % ', '.join(unsigned), message)


def validate_return_to(message, return_to):
    '''
    Compare the assertion's openid.return_to with the URL the
    application received it on.

    Query arguments of openid.return_to must have been delivered along
    with the assertion, and scheme, authority and path must match.
    '''
    msg_return_to = message.getArg(OPENID_NS, 'return_to')
    query = urllib.parse.urlparse(msg_return_to).query
    mismatched = [
        key for key, value in urllib.parse.parse_qsl(query)
        if message.getArg(BARE_NS, key, None) != value
    ]
    if mismatched:
        raise AuthenticationError(
            'Mismatched return_to args: %s' % ', '.join(mismatched), message)

    try:
        expected = urllib.parse.urlparse(urinorm.urinorm(return_to))
        actual = urllib.parse.urlparse(urinorm.urinorm(msg_return_to))
    except ValueError as why:
        raise AuthenticationError('Bad return_to: %s' % (why,), message)
    if expected[:3] != actual[:3]:
        raise AuthenticationError(
            'Wrong return_to: %s' % (msg_return_to,), message)


class AuthenticationError(ProtocolError):
    '''
    The assertion is well formed and correctly signed but doesn't
    match what the Relying Party asked for or discovered.

    @ivar response: the offending message
    '''
    def __init__(self, text, response):
        super().__init__(text, response)
        self.response = response


class Consumer(object):
    """Runs the Relying Party side of one user's handshake.

    Make a new one for every web request; all state is kept in the
    session and the store.

    @ivar session: dict-like per-user storage that survives between the
        request that starts the handshake and the one that completes it

    @ivar channel: the L{Channel<oidchannel.channel.Channel>} doing the
        protocol work

    @ivar consumer: the L{GenericConsumer} making associations

    @ivar discover: callable turning an identifier into a
        L{Service<oidchannel.service.Service>}, or C{None}

    @cvar session_key_prefix: prepended to the session key; change it if
        it collides with something the application keeps there
    """
    session_key_prefix = "_oidchannel_consumer_"

    _token = 'last_token'

    def __init__(self, session, store, settings=None, discover=None,
                 transport=None, consumer_class=None):
        """
        @param store: an L{OpenIDStore<oidchannel.store.interface.OpenIDStore>}
        @param settings: a L{Settings<oidchannel.settings.Settings>}
        @param transport: used instead of L{oidchannel.fetchers.fetch}
            for direct requests
        @param consumer_class: a L{GenericConsumer} subclass
        """
        self.session = session
        self.channel = Channel(store, settings, transport)
        self.consumer = (consumer_class or GenericConsumer)(self.channel)
        self.discover = discover
        self._token_key = self.session_key_prefix + self._token

    @property
    def state(self):
        data = self.session.get(self._token_key)
        if data is None:
            return IDLE
        return data['state']

    def _save(self, endpoint, handshake, state, anonymous):
        self.session[self._token_key] = {
            'endpoint': endpoint.toDict(),
            'phase': handshake.phase,
            'state': state,
            'anonymous': anonymous,
        }

    def _update(self, **kwargs):
        data = self.session.get(self._token_key)
        if data is not None:
            self.session[self._token_key] = dict(data, **kwargs)

    def begin(self, user_url, anonymous=False):
        """Discover the Provider for C{user_url} and start a handshake
        with it.

        @param anonymous: ask for extension data only, without an
            assertion about an identifier

        @rtype: L{AuthRequest}

        @raises DiscoveryFailure: discovery failed or is not configured
        """
        if self.discover is None:
            raise DiscoveryFailure(
                'No discovery configured, cannot discover %r' % (user_url,))
        return self.beginWithoutDiscovery(self.discover(user_url), anonymous)

    def beginWithoutDiscovery(self, service, anonymous=False):
        """Start a handshake with an already known Provider.

        An association is looked up or negotiated first.  Without one
        the request goes out in stateless mode, unless the settings
        disable stateless verification.

        @type service: L{Service<oidchannel.service.Service>}

        @rtype: L{AuthRequest}

        @raises AssociationNotFound: no association could be made and
            stateless verification is disabled
        @raises UnsupportedVersion: an anonymous request to an OpenID 1
            Provider
        """
        handshake = Handshake()
        self._save(service, handshake, REQUEST_BUILT, anonymous)

        assoc = self.consumer._getAssociation(service, handshake)
        if assoc is not None:
            state = ASSOCIATED
        elif self.channel.settings.stateless_fallback:
            state = STATELESS
        else:
            self._save(service, handshake, FAILED, anonymous)
            raise AssociationNotFound(
                'Could not associate with %s' % (service.server_url,))

        request = AuthRequest(service, assoc, self.channel, self._requestSent)
        if service.compat_mode():
            # OpenID 1 assertions carry no nonce of their own
            request.return_to_args[NONCE_ARG] = mkNonce()

        try:
            request.setAnonymous(anonymous)
        except ValueError as why:
            self._save(service, handshake, FAILED, anonymous)
            raise UnsupportedVersion(str(why))

        self._save(service, handshake, state, anonymous)
        return request

    def _requestSent(self, message):
        data = self.session.get(self._token_key)
        if data is None:
            # abandoned
            return
        handshake = Handshake(data['phase'])
        if handshake.phase != CHECKID:
            self.channel.sequence(message, handshake)
        self._update(phase=handshake.phase, state=AWAITING_RESPONSE)

    def complete(self, query, current_url):
        """Interpret what the Provider sent to the return_to URL.

        A response arriving when no handshake is in progress is treated
        as an unsolicited assertion and is not remembered.

        @param query: the arguments of the request, one value per key

        @param current_url: the URL the application was invoked with,
            checked against openid.return_to

        @returns: a L{Response} with a status of C{'success'},
            C{'extensions_only'}, C{'cancel'} or C{'setup_needed'}

        @raises OutOfSequence: the response doesn't belong to the
            handshake in progress, or was already processed
        @raises ProtocolError: the response failed verification; the
            subclass says why
        """
        data = self.session.get(self._token_key)
        if data is None:
            endpoint = None
            handshake = Handshake(CHECKID)
            anonymous = False
        else:
            endpoint = Service.fromDict(data['endpoint'])
            handshake = Handshake(data['phase'])
            anonymous = data.get('anonymous', False)

        try:
            response = self._complete(query, current_url, endpoint, handshake,
                                      anonymous)
        except OutOfSequence:
            raise
        except ProtocolError as why:
            logging.info('OpenID response rejected: %s' % (why,))
            self._update(phase=handshake.phase, state=FAILED)
            raise

        self._update(phase=handshake.phase, state={
            SUCCESS: AUTHENTICATED,
            EXTENSIONS_ONLY: EXTENSIONS_ONLY,
            CANCEL: CANCELLED,
            SETUP_NEEDED: SETUP_NEEDED,
        }[response.status])
        return response

    def _complete(self, query, current_url, endpoint, handshake, anonymous):
        message = self.channel.decode(query, RESPONSE_KINDS)
        self.channel.sequence(message, handshake)

        kind = message.kind()
        # Only a request without an identifier can be answered this way,
        # so there is no such thing as an unsolicited one.
        if kind == protocol.EXTENSION_RESPONSE and not anonymous:
            raise OutOfSequence(
                'Extension response without an anonymous request '
                'in progress', message)
        if kind == protocol.ERROR:
            raise AuthenticationError(
                message.getArg(OPENID_NS, 'error'), message)
        if kind == protocol.NEGATIVE_ASSERTION:
            if message.getArg(OPENID_NS, 'mode') == 'cancel':
                status = CANCEL
            else:
                status = SETUP_NEEDED
            return Response(message, status=status, endpoint=endpoint)

        endpoint = self.verify_response(message, endpoint, current_url)
        server_url = endpoint.server_url if endpoint is not None else None
        self.channel.read(message, kind, server_url)

        signed_fields = ['openid.' + name for name in
                         message.getArg(OPENID_NS, 'signed').split(',')]
        if kind == protocol.EXTENSION_RESPONSE:
            return Response(message, signed_fields, status=EXTENSIONS_ONLY,
                            endpoint=endpoint)
        claimed_id = endpoint.claimed_id if message.isOpenID1() else None
        return Response(message, signed_fields, claimed_id, SUCCESS, endpoint)

    def abandon(self):
        """Forget the handshake in progress."""
        self.session.pop(self._token_key, None)

    def verify_response(self, message, endpoint, return_to):
        '''
        Check an assertion against the discovered information.

        @returns: the endpoint the assertion came from
        '''
        validate_fields(message)
        validate_return_to(message, return_to)
        if message.kind() == protocol.EXTENSION_RESPONSE:
            return self._verify_extension_response(message, endpoint)
        if message.isOpenID2():
            return self._verify_openid2(message, endpoint)
        return self._verify_openid1(message, endpoint)

    def _verify_openid1(self, message, endpoint):
        if endpoint is None:
            raise AuthenticationError(
                'OpenID 1 assertions need a handshake in progress', message)
        if not endpoint.compat_mode():
            raise AuthenticationError('Expected an OpenID 2 response', message)
        identity = message.getArg(OPENID_NS, 'identity')
        if identity != endpoint.identity():
            raise AuthenticationError('Bad identity: %s' % (identity,), message)
        return endpoint

    def _verify_openid2(self, message, endpoint):
        claimed_id = message.getArg(OPENID2_NS, 'claimed_id')
        if claimed_id:
            claimed_id = urllib.parse.urldefrag(claimed_id)[0]
        identity = message.getArg(OPENID2_NS, 'identity')

        # The stored endpoint only vouches for the identifier it was
        # discovered for.
        if endpoint is None or claimed_id != endpoint.claimed_id:
            if self.discover is None:
                raise AuthenticationError(
                    'No discovery configured to verify claimed_id %s'
                    % (claimed_id,), message)
            try:
                endpoint = self.discover(claimed_id)
            except DiscoveryFailure as why:
                raise AuthenticationError(
                    'Discovery of %s failed: %s' % (claimed_id, why), message)

        op_endpoint = message.getArg(OPENID2_NS, 'op_endpoint')
        if endpoint.compat_mode():
            raise AuthenticationError('Expected an OpenID 1 response', message)
        if op_endpoint != endpoint.server_url:
            raise AuthenticationError(
                'Bad OP Endpoint: %s' % (op_endpoint,), message)
        if claimed_id != endpoint.claimed_id:
            raise AuthenticationError(
                'Bad Claimed ID: %s' % (claimed_id,), message)
        if identity != endpoint.identity():
            raise AuthenticationError('Bad Identity: %s' % (identity,), message)
        return endpoint

    def _verify_extension_response(self, message, endpoint):
        op_endpoint = message.getArg(OPENID2_NS, 'op_endpoint')
        if endpoint is None or op_endpoint != endpoint.server_url:
            raise AuthenticationError(
                'Bad OP Endpoint: %s' % (op_endpoint,), message)
        return endpoint

    def setAssociationPreference(self, association_preferences):
        """Restrict and order the association types to ask for.

        >>> consumer.setAssociationPreference([('HMAC-SHA256', 'DH-SHA256')])

        An empty list turns associations off: every assertion is then
        verified with C{check_authentication}.

        @param association_preferences: (association type, session type)
            pairs, most preferred first
        @type association_preferences: [(str, str)]
        """
        self.consumer.negotiator = SessionNegotiator(association_preferences)


class DiffieHellmanSHA1ConsumerSession(object):
    session_type = 'DH-SHA1'
    hash_func = staticmethod(cryptutil.sha1)
    secret_size = 20
    allowed_assoc_types = ['HMAC-SHA1']

    def __init__(self, dh=None):
        self.dh = dh if dh is not None else DiffieHellman.fromDefaults()

    def getRequest(self):
        """Arguments the associate request needs for this session."""
        args = {'dh_consumer_public': cryptutil.longToBase64(self.dh.public)}
        if not self.dh.usingDefaultValues():
            args['dh_modulus'] = cryptutil.longToBase64(self.dh.modulus)
            args['dh_gen'] = cryptutil.longToBase64(self.dh.generator)
        return args

    def extractSecret(self, response):
        server_public = cryptutil.base64ToLong(
            response.getArg(OPENID_NS, 'dh_server_public', no_default))
        masked = oidutil.fromBase64(
            response.getArg(OPENID_NS, 'enc_mac_key', no_default))
        return self.dh.xorSecret(server_public, masked, self.hash_func)


class DiffieHellmanSHA256ConsumerSession(DiffieHellmanSHA1ConsumerSession):
    session_type = 'DH-SHA256'
    hash_func = staticmethod(cryptutil.sha256)
    secret_size = 32
    allowed_assoc_types = ['HMAC-SHA256']


class PlainTextConsumerSession(object):
    session_type = 'no-encryption'
    allowed_assoc_types = ['HMAC-SHA1', 'HMAC-SHA256']

    def getRequest(self):
        return {}

    def extractSecret(self, response):
        return oidutil.fromBase64(
            response.getArg(OPENID_NS, 'mac_key', no_default))


SESSION_TYPES = {
    'DH-SHA1': DiffieHellmanSHA1ConsumerSession,
    'DH-SHA256': DiffieHellmanSHA256ConsumerSession,
    'no-encryption': PlainTextConsumerSession,
}


def create_session(session_type):
    return SESSION_TYPES[session_type]()


class GenericConsumer(object):
    """Association management for a L{Consumer}, with no knowledge of
    sessions or of the web application around it.

    @ivar negotiator: the association and session types to ask for, in
        order.  C{no-encryption} pairs are skipped unless the channel
        allows them for the endpoint.
    @type negotiator: L{SessionNegotiator<oidchannel.association.SessionNegotiator>}
    """

    def __init__(self, channel):
        self.channel = channel
        self.store = channel.store
        self.negotiator = default_negotiator.copy()

    def _negotiatorFor(self, server_url):
        if self.channel.allowsPlaintext(server_url):
            return self.negotiator
        return self.negotiator.withoutPlaintext()

    def _getAssociation(self, endpoint, handshake=None):
        """The stored association with the endpoint, or a freshly
        negotiated (and stored) one.

        @rtype: L{Association<oidchannel.association.Association>} or None
        """
        assoc = self.store.getAssociation(endpoint.server_url)
        if assoc is not None and assoc.expiresIn > 0:
            return assoc

        assoc = self._negotiateAssociation(endpoint, handshake)
        if assoc is not None:
            self.store.storeAssociation(endpoint.server_url, assoc)
        return assoc

    def _negotiateAssociation(self, endpoint, handshake=None):
        """Ask for the preferred association type.  If the Provider
        refuses it and names one the negotiator allows, ask for that one
        instead, once.

        @returns: the new association, or None
        """
        negotiator = self._negotiatorFor(endpoint.server_url)
        assoc_type, session_type = negotiator.getAllowedType()
        if assoc_type is None:
            logging.error('No association type allowed for %s'
                          % (endpoint.server_url,))
            return None

        try:
            return self._requestAssociation(
                endpoint, assoc_type, session_type, handshake)
        except ServerError as why:
            suggested = self._extractSupportedAssociationType(
                why, endpoint, assoc_type, negotiator)
        if suggested is None:
            return None

        assoc_type, session_type = suggested
        try:
            return self._requestAssociation(
                endpoint, assoc_type, session_type, handshake)
        except ServerError:
            logging.error(
                'Server %s refused its suggested association '
                'type: session_type=%s, assoc_type=%s'
                % (endpoint.server_url, session_type, assoc_type))
            return None

    def _extractSupportedAssociationType(self, server_error, endpoint,
                                         assoc_type, negotiator=None):
        """Read the alternative an C{unsupported-type} error offers.

        @returns: (assoc_type, session_type) to retry with, or None when
            the error offers nothing the negotiator allows
        """
        if negotiator is None:
            negotiator = self._negotiatorFor(endpoint.server_url)

        # OpenID 1 has no way to suggest an alternative
        if (server_error.error_code != 'unsupported-type' or
            server_error.message.isOpenID1()):
            logging.error(
                'Server error when requesting an association from %r: %s'
                % (endpoint.server_url, server_error.error_text))
            return None

        logging.error('Unsupported association type %s: %s'
                      % (assoc_type, server_error.error_text))

        suggested_assoc = server_error.message.getArg(OPENID_NS, 'assoc_type')
        suggested_session = server_error.message.getArg(
            OPENID_NS, 'session_type')
        if suggested_assoc is None or suggested_session is None:
            logging.error('Server responded with unsupported association '
                          'session but did not supply a fallback.')
            return None
        if not negotiator.isAllowed(suggested_assoc, suggested_session):
            logging.error('Server sent unsupported session/association type: '
                          'session_type=%s, assoc_type=%s'
                          % (suggested_session, suggested_assoc))
            return None
        return suggested_assoc, suggested_session

    def _requestAssociation(self, endpoint, assoc_type, session_type,
                            handshake=None):
        """Send one associate request and turn the reply into an
        association.

        @returns: the association, or None if the exchange failed

        @raises ServerError: the Provider replied with an error
        """
        assoc_session, request = self._createAssociateRequest(
            endpoint, assoc_type, session_type)

        try:
            response = self.channel.send(
                request, endpoint.server_url, protocol.ASSOCIATE_RESPONSE,
                handshake)
        except ServerError:
            raise
        except CommunicationFailure as why:
            logging.error('openid.associate request failed: %s' % (why,))
            return None
        except ProtocolError as why:
            logging.error('Bad association response from %s: %s'
                          % (endpoint.server_url, why))
            return None

        try:
            return self._extractAssociation(
                response, assoc_session, endpoint.server_url)
        except ProtocolError as why:
            logging.error('Protocol error parsing response from %s: %s'
                          % (endpoint.server_url, why))
            return None

    def _createAssociateRequest(self, endpoint, assoc_type, session_type):
        """Build the associate request for the endpoint.

        @returns: (session object, request message); the session object
            later extracts the secret from the reply
        """
        assoc_session = create_session(session_type)

        args = {'mode': 'associate', 'assoc_type': assoc_type}
        if endpoint.compat_mode():
            # OpenID 1 signals no-encryption by leaving session_type out
            if assoc_session.session_type != 'no-encryption':
                args['session_type'] = assoc_session.session_type
        else:
            args['ns'] = OPENID2_NS
            args['session_type'] = assoc_session.session_type

        args.update(assoc_session.getRequest())
        return assoc_session, Message.fromOpenIDArgs(args)

    def _getOpenID1SessionType(self, assoc_response):
        """The session type of an OpenID 1 associate response.  A
        missing or empty one means C{no-encryption}.
        """
        session_type = assoc_response.getArg(OPENID_NS, 'session_type')
        if session_type == 'no-encryption':
            logging.warning('OpenID server sent "no-encryption" '
                            'for OpenID 1.X')
        elif not session_type:
            session_type = 'no-encryption'
        return session_type

    def _extractAssociation(self, assoc_response, assoc_session,
                            server_url=None):
        """Build the association an associate response describes.

        @param assoc_session: the session object the request was made with

        @raises MalformedMessage: a field is missing or invalid, or the
            response doesn't match the request

        @rtype: L{Association<oidchannel.association.Association>}
        """
        try:
            assoc_type = assoc_response.getArg(
                OPENID_NS, 'assoc_type', no_default)
            assoc_handle = assoc_response.getArg(
                OPENID_NS, 'assoc_handle', no_default)
            expires_in_str = assoc_response.getArg(
                OPENID_NS, 'expires_in', no_default)
            if assoc_response.isOpenID1():
                session_type = self._getOpenID1SessionType(assoc_response)
            else:
                session_type = assoc_response.getArg(
                    OPENID2_NS, 'session_type', no_default)
        except KeyError as why:
            raise MalformedMessage(
                'Missing required parameter: %s' % (why,), assoc_response)

        try:
            expires_in = int(expires_in_str)
        except ValueError as why:
            raise MalformedMessage(
                'Invalid expires_in field: %s' % (why,), assoc_response)

        if assoc_session.session_type != session_type:
            # An OpenID 1 Provider may answer any request in plaintext,
            # which is only acceptable where plaintext is allowed anyway.
            if (assoc_response.isOpenID1() and
                session_type == 'no-encryption' and
                self.channel.allowsPlaintext(server_url)):
                assoc_session = PlainTextConsumerSession()
            else:
                raise MalformedMessage(
                    'Session type mismatch. Expected %r, got %r'
                    % (assoc_session.session_type, session_type),
                    assoc_response)

        if assoc_type not in assoc_session.allowed_assoc_types:
            raise MalformedMessage(
                'Unsupported assoc_type for session %s returned: %s'
                % (assoc_session.session_type, assoc_type), assoc_response)

        try:
            secret = assoc_session.extractSecret(assoc_response)
        except (KeyError, ValueError) as why:
            raise MalformedMessage(
                'Malformed response for %s session: %s'
                % (assoc_session.session_type, why), assoc_response)

        if len(secret) != getSecretSize(assoc_type):
            raise MalformedMessage(
                'Secret of %d bytes for %s' % (len(secret), assoc_type),
                assoc_response)

        return Association.fromExpiresIn(
            expires_in, assoc_handle, secret, assoc_type)


class AuthRequest(object):
    """A checkid request on its way to the Provider.

    Made by L{Consumer.begin}; the application adds extensions to it and
    then renders it with L{redirect} (or one of the lower level
    L{redirectURL}, L{formMarkup} and L{htmlMarkup}).

    @ivar assoc: the association the assertion should be signed with,
        C{None} in stateless mode
    @ivar endpoint: the L{Service<oidchannel.service.Service>} the
        request goes to
    @ivar return_to_args: extra arguments appended to the return_to URL
    """

    def __init__(self, endpoint, assoc, channel=None, on_message=None):
        """
        @param on_message: called with every request message built
        """
        self.assoc = assoc
        self.endpoint = endpoint
        self.channel = channel
        self.on_message = on_message
        self.return_to_args = {}
        self.message = Message(endpoint.ns())
        self._anonymous = False

    def setAnonymous(self, is_anonymous):
        """Leave the identifier out of the request, for requests that
        only carry extensions.

        @raises ValueError: for an OpenID 1 request, which must name an
            identifier
        """
        if is_anonymous and self.message.isOpenID1():
            raise ValueError('OpenID 1 requests MUST include the '
                             'identifier in the request')
        self._anonymous = is_anonymous

    def addExtension(self, extension_request):
        """Put an L{Extension<oidchannel.extension.Extension>} request
        into this request.

        @raises ConflictingExtension: the extension's namespace is
            already used by this request
        """
        extension_request.toMessage(self.message)

    def addExtensionArg(self, namespace, key, value):
        """Set a single argument in an extension namespace.  Everything
        added ends up in the redirect URL, so keep it short.
        """
        self.message.setArg(namespace, key, value)

    def getMessage(self, realm, return_to=None, immediate=False):
        """The checkid request message.

        @param realm: the URL pattern the user is asked to trust

        @param return_to: where the Provider sends the user agent back.
            Without it the user stays at the Provider, which OpenID 1
            and immediate requests don't allow.

        @param immediate: ask for C{checkid_immediate}: the Provider
            answers at once instead of talking to the user

        @rtype: L{Message<oidchannel.message.Message>}
        """
        if return_to:
            return_to = oidutil.appendArgs(return_to, self.return_to_args)
        elif immediate:
            raise ValueError(
                '"return_to" is mandatory when using "checkid_immediate"')
        elif self.message.isOpenID1():
            raise ValueError('"return_to" is mandatory for OpenID 1 requests')
        elif self.return_to_args:
            raise ValueError('extra "return_to" arguments were specified, '
                             'but no return_to was specified')

        mode = 'checkid_immediate' if immediate else 'checkid_setup'
        message = self.message.copy()
        realm_key = 'trust_root' if message.isOpenID1() else 'realm'
        message.setArg(OPENID_NS, realm_key, realm)
        message.setArg(OPENID_NS, 'mode', mode)
        if return_to:
            message.setArg(OPENID_NS, 'return_to', return_to)

        if not self._anonymous:
            if self.endpoint.is_op_identifier():
                # The Provider picks the identifier; never the case for
                # OpenID 1 endpoints.
                claimed_id = identity = IDENTIFIER_SELECT
            else:
                identity = self.endpoint.identity()
                claimed_id = self.endpoint.claimed_id
            message.setArg(OPENID_NS, 'identity', identity)
            if message.isOpenID2():
                message.setArg(OPENID2_NS, 'claimed_id', claimed_id)

        if self.assoc:
            message.setArg(OPENID_NS, 'assoc_handle', self.assoc.handle)
            how = 'with association %s' % (self.assoc.handle,)
        else:
            how = 'using stateless mode.'
        logging.info('Generated %s request to %s %s'
                     % (mode, self.endpoint.server_url, how))

        if self.on_message is not None:
            self.on_message(message)
        return message

    def redirect(self, realm, return_to=None, immediate=False):
        """The request as an indirect message for the user agent.

        @rtype: L{IndirectResponse<oidchannel.channel.IndirectResponse>}
        """
        message = self.getMessage(realm, return_to, immediate)
        return self.channel.redirect(message, self.endpoint.server_url)

    def redirectURL(self, realm, return_to=None, immediate=False):
        """The Provider's endpoint URL with the request in its query.

        Long OpenID 2 requests are better sent with L{formMarkup}, see
        L{redirect}.
        """
        message = self.getMessage(realm, return_to, immediate)
        return message.toURL(self.endpoint.server_url)

    def formMarkup(self, realm, return_to=None, immediate=False,
            form_tag_attrs=None):
        """An HTML form posting the request to the Provider.

        @param form_tag_attrs: extra attributes of the form tag;
            C{action} and C{method} are always overridden
        @type form_tag_attrs: {str: str}
        """
        message = self.getMessage(realm, return_to, immediate)
        return message.toFormMarkup(self.endpoint.server_url, form_tag_attrs)

    def htmlMarkup(self, realm, return_to=None, immediate=False,
            form_tag_attrs=None):
        """A page submitting L{formMarkup} as soon as it loads."""
        message = self.getMessage(realm, return_to, immediate)
        return oidutil.autoSubmitHTML(
            message.toFormElement(self.endpoint.server_url, form_tag_attrs))

    def shouldSendRedirect(self):
        """OpenID 1 Providers only take redirects, OpenID 2 ones also
        take form posts."""
        return self.endpoint.compat_mode()


class Response(object):
    '''
    What L{Consumer.complete} made of the Provider's answer.

    @ivar status: C{'success'}, C{'extensions_only'}, C{'cancel'} or
        C{'setup_needed'}
    @ivar signed_fields: the C{openid.*} keys covered by the signature
    @ivar endpoint: the Provider the response came from, if known
    '''
    def __init__(self, message, signed_fields=None, claimed_id=None,
                 status=SUCCESS, endpoint=None):
        self.message = message
        self.signed_fields = signed_fields or []
        self.status = status
        self.endpoint = endpoint
        self.claimed_id = claimed_id or self.getSigned(OPENID2_NS, 'claimed_id')

    def identity(self):
        """The identifier the Provider vouched for, or None."""
        return self.claimed_id

    @property
    def setup_url(self):
        """Where to send the user to finish an immediate request the
        Provider could not answer (OpenID 1 only)."""
        return self.message.setup_url()

    def isOpenID1(self):
        return self.message.isOpenID1()

    def isSigned(self, ns_uri, ns_key):
        """Is the field covered by the signature, whatever alias its
        namespace got?"""
        return self.message.getKey(ns_uri, ns_key) in self.signed_fields

    def getSigned(self, ns_uri, ns_key, default=None):
        if self.isSigned(ns_uri, ns_key):
            return self.message.getArg(ns_uri, ns_key, default)
        return default

    def getSignedNS(self, ns_uri):
        """All arguments in the namespace, or None unless every one of
        them is signed."""
        args = self.message.getArgs(ns_uri)
        if all(self.isSigned(ns_uri, key) for key in args):
            return args
        return None

    def extensionResponse(self, namespace_uri, require_signed):
        """The arguments in an extension namespace.

        @param require_signed: return None unless all of them are signed
        """
        if require_signed:
            return self.getSignedNS(namespace_uri)
        return self.message.getArgs(namespace_uri)

    def getReturnTo(self):
        """The signed openid.return_to, or None."""
        return self.getSigned(OPENID_NS, 'return_to')

    def __eq__(self, other):
        if not isinstance(other, Response):
            return NotImplemented
        return (self.endpoint == other.endpoint and
                self.message == other.message and
                self.signed_fields == other.signed_fields and
                self.status == other.status)

    def __ne__(self, other):
        return not (self == other)

    def __repr__(self):
        return '<%s.%s %s id=%r signed=%r>' % (
            self.__class__.__module__,
            self.__class__.__name__,
            self.status, self.identity(), self.signed_fields)
