# -*- test-case-name: oidchannel.test.test_server -*-
"""OpenID server protocol and logic.

Overview
========

    An OpenID server (the Provider) must perform three tasks:

        1. Examine the incoming request to determine its nature and validity.

        2. Make a decision about how to respond to this request.

        3. Format the response according to the protocol.

    The first and last of these tasks may performed by
    the L{decodeRequest<Server.decodeRequest>} and
    L{encodeResponse<Server.encodeResponse>} methods of the
    L{Server} object.  Who gets to do the intermediate task -- deciding
    how to respond to the request -- will depend on what type of request it
    is.

    If it's a request to authenticate a user (a X{C{checkid_setup}} or
    X{C{checkid_immediate}} request), you need to decide if you will assert
    that this user may claim the identity in question.  Exactly how you do
    that is a matter of application policy, but it generally involves making
    sure the user has an account with your system and is logged in, checking
    to see if that identity is hers to claim, and verifying with the user that
    she does consent to releasing that information to the party making the
    request.  Extension-only requests (no identifier) arrive as an
    L{AnonymousRequest} instead of a L{CheckIDRequest}.

    Examine the properties of the L{CheckIDRequest} object, and when
    you've come to a decision, form a response by calling
    L{CheckIDRequest.answer}.

    Other types of requests relate to establishing associations between client
    and server and verifying the authenticity of previous communications.
    L{Server} contains all the logic and data necessary to respond to
    such requests; just pass the request to L{Server.handleRequest}.


Request lifecycle
=================

    Requests move from C{received} to C{approved} or C{denied} when
    answered and to C{sent} when their response is encoded.  Answering or
    encoding a request twice raises
    L{OutOfSequence<oidchannel.errors.OutOfSequence>}.
"""
import logging
import time

from oidchannel import cryptutil
from oidchannel import message as protocol
from oidchannel import oidutil
from oidchannel.association import Association, default_negotiator, \
     getSecretSize
from oidchannel.channel import Channel, SIGNED_KINDS
from oidchannel.dh import DiffieHellman
from oidchannel.errors import ProtocolError, MalformedMessage, \
     InvalidSignature, OutOfSequence
from oidchannel.message import Message, OPENID_NS, OPENID2_NS, \
     IDENTIFIER_SELECT, no_default
from oidchannel.realm import Realm

HTTP_OK = 200
HTTP_REDIRECT = 302
HTTP_ERROR = 400

BROWSER_REQUEST_MODES = ['checkid_setup', 'checkid_immediate']

ENCODE_KVFORM = ('kvform',)
ENCODE_URL = ('URL/redirect',)

RECEIVED = 'received'
APPROVED = 'approved'
DENIED = 'denied'
SENT = 'sent'

# Message kinds a Provider endpoint accepts
REQUEST_KINDS = (
    protocol.ASSOCIATE_REQUEST,
    protocol.CHECKID_REQUEST,
    protocol.EXTENSION_REQUEST,
    protocol.CHECK_AUTH_REQUEST,
    )


class UntrustedReturnURL(ProtocolError):
    """A return_to outside of the realm of the request."""

    def __init__(self, message, return_to, trust_root):
        self.return_to = return_to
        self.trust_root = trust_root
        super().__init__(
            "return_to %r not under trust_root %r" % (return_to, trust_root),
            message)


class NoReturnToError(ProtocolError):
    """The request has no return_to, so there is nowhere to send an
    answer to."""


class OpenIDRequest(object):
    """I represent an incoming OpenID request.

    @cvar mode: the C{X{openid.mode}} of this request.
    @type mode: str

    @ivar message: the original request message
    @ivar state: C{received}, C{approved}, C{denied} or C{sent}
    """
    mode = None
    assoc_handle = None

    def __init__(self):
        self.message = None
        self.state = RECEIVED

    def _decide(self, allow):
        if self.state != RECEIVED:
            raise OutOfSequence(
                '%s request already answered' % (self.mode,), self.message)
        self.state = APPROVED if allow else DENIED

    def markSent(self):
        if self.state == RECEIVED:
            raise OutOfSequence(
                '%s request has not been answered' % (self.mode,),
                self.message)
        if self.state == SENT:
            raise OutOfSequence(
                'Response to %s request already sent' % (self.mode,),
                self.message)
        self.state = SENT


class CheckAuthRequest(OpenIDRequest):
    """A request to verify the validity of a previous response.

    @cvar mode: "X{C{check_authentication}}"
    @type mode: str

    @ivar assoc_handle: The X{association handle} the response was signed with.
    @type assoc_handle: str
    @ivar signed: The message with the signature to check, as it was
        when it was signed.
    @type signed: L{Message<oidchannel.message.Message>}

    @ivar invalidate_handle: An X{association handle} the client is asking
        about the validity of.  Optional, may be C{None}.
    @type invalidate_handle: str
    """
    mode = "check_authentication"

    @classmethod
    def fromMessage(cls, message, op_endpoint=None):
        """Construct me from an OpenID Message.

        @returntype: L{CheckAuthRequest}
        """
        self = cls()
        self.message = message
        self.assoc_handle = message.getArg(OPENID_NS, 'assoc_handle')
        self.invalidate_handle = message.getArg(OPENID_NS, 'invalidate_handle')

        # openid.mode is currently check_authentication because
        # that's the mode of this request.  But the signature
        # was made on something with a different openid.mode.
        self.signed = message.copy()
        self.signed.setArg(OPENID_NS, 'mode', 'id_res')
        return self

    def answer(self, signatory):
        """Respond to this request.

        Given a L{Signatory}, I can check the validity of the signature and
        the X{C{invalidate_handle}}.

        @returns: A response with an X{C{is_valid}} (and, if
           appropriate X{C{invalidate_handle}}) field.
        @returntype: L{OpenIDResponse}
        """
        self._decide(True)
        is_valid = signatory.verify(self.assoc_handle, self.signed)
        # Now invalidate that assoc_handle so it this checkAuth message cannot
        # be replayed.
        signatory.invalidate(self.assoc_handle, dumb=True)
        response = OpenIDResponse(self)
        response.fields.setArg(OPENID_NS, 'is_valid',
                               'true' if is_valid else 'false')

        if self.invalidate_handle:
            assoc = signatory.getAssociation(self.invalidate_handle, dumb=False)
            if not assoc:
                response.fields.setArg(
                    OPENID_NS, 'invalidate_handle', self.invalidate_handle)
        return response

    def __str__(self):
        if self.invalidate_handle:
            ih = " invalidate? %r" % (self.invalidate_handle,)
        else:
            ih = ""
        return "<%s handle: %r%s>" % (
            self.__class__.__name__, self.assoc_handle, ih)


class PlainTextServerSession(object):
    """An object that knows how to handle association requests with no
    session type.
    """
    session_type = 'no-encryption'
    allowed_assoc_types = ['HMAC-SHA1', 'HMAC-SHA256']

    @classmethod
    def fromMessage(cls, unused_request):
        return cls()

    def answer(self, secret):
        return {'mac_key': oidutil.toBase64(secret)}


class DiffieHellmanSHA1ServerSession(object):
    """An object that knows how to handle association requests with the
    Diffie-Hellman session type.

    @ivar dh: The Diffie-Hellman algorithm values for this request
    @type dh: DiffieHellman

    @ivar consumer_pubkey: The public key sent by the consumer in the
        associate request
    @type consumer_pubkey: int
    """
    session_type = 'DH-SHA1'
    hash_func = staticmethod(cryptutil.sha1)
    allowed_assoc_types = ['HMAC-SHA1']

    def __init__(self, dh, consumer_pubkey):
        self.dh = dh
        self.consumer_pubkey = consumer_pubkey

    @classmethod
    def fromMessage(cls, message):
        """
        @param message: The associate request message
        @type message: oidchannel.message.Message

        @returntype: L{DiffieHellmanSHA1ServerSession}

        @raises ValueError: When parameters required to establish the
            session are missing or invalid.
        """
        dh_modulus = message.getArg(OPENID_NS, 'dh_modulus')
        dh_gen = message.getArg(OPENID_NS, 'dh_gen')
        if (dh_modulus is None) != (dh_gen is None):
            missing = 'modulus' if dh_modulus is None else 'generator'
            raise ValueError('If non-default modulus or generator is '
                             'supplied, both must be supplied. Missing %s'
                             % (missing,))

        if dh_modulus is not None:
            dh = DiffieHellman(cryptutil.base64ToLong(dh_modulus),
                               cryptutil.base64ToLong(dh_gen))
        else:
            dh = DiffieHellman.fromDefaults()

        consumer_pubkey = message.getArg(OPENID_NS, 'dh_consumer_public')
        if consumer_pubkey is None:
            raise ValueError('Public key for %s session not found in message'
                             % (cls.session_type,))
        consumer_pubkey = cryptutil.base64ToLong(consumer_pubkey)
        if not 1 < consumer_pubkey < dh.modulus:
            raise ValueError('Public key out of range')

        return cls(dh, consumer_pubkey)

    def answer(self, secret):
        mac_key = self.dh.xorSecret(self.consumer_pubkey, secret,
                                    self.hash_func)
        return {
            'dh_server_public': cryptutil.longToBase64(self.dh.public),
            'enc_mac_key': oidutil.toBase64(mac_key),
            }


class DiffieHellmanSHA256ServerSession(DiffieHellmanSHA1ServerSession):
    session_type = 'DH-SHA256'
    hash_func = staticmethod(cryptutil.sha256)
    allowed_assoc_types = ['HMAC-SHA256']


class AssociateRequest(OpenIDRequest):
    """A request to establish an X{association}.

    @ivar assoc_type: type of association requested
    @type assoc_type: str

    @ivar session_type: the requested session type
    @type session_type: str

    @ivar session: An object that knows how to handle association
        requests of the requested type, or C{None} if the type is not
        one we know.
    """
    mode = "associate"

    session_classes = {
        'no-encryption': PlainTextServerSession,
        'DH-SHA1': DiffieHellmanSHA1ServerSession,
        'DH-SHA256': DiffieHellmanSHA256ServerSession,
        }

    def __init__(self, session, assoc_type):
        super(AssociateRequest, self).__init__()
        self.session = session
        self.session_type = session.session_type if session else None
        self.assoc_type = assoc_type

    @classmethod
    def fromMessage(cls, message, op_endpoint=None):
        """Construct me from an OpenID Message.

        @raises MalformedMessage: When not all required parameters are
            present in the message, or they are invalid.

        @returntype: L{AssociateRequest}
        """
        if message.isOpenID1():
            session_type = message.getArg(OPENID_NS, 'session_type')
            if session_type == 'no-encryption':
                logging.warning('Received OpenID 1 request with a no-encryption '
                                'association session type. Continuing anyway.')
            elif not session_type:
                session_type = 'no-encryption'
        else:
            session_type = message.getArg(OPENID2_NS, 'session_type', no_default)

        assoc_type = message.getArg(OPENID_NS, 'assoc_type', no_default)

        session_class = cls.session_classes.get(session_type)
        if session_class is None:
            session = None
        else:
            try:
                session = session_class.fromMessage(message)
            except ValueError as why:
                raise MalformedMessage('Error parsing %s session: %s'
                                       % (session_type, why), message)

        self = cls(session, assoc_type)
        self.session_type = session_type
        self.message = message
        return self

    def isSupported(self):
        """Can this request be answered with an association at all?"""
        return (self.session is not None and
                self.assoc_type in self.session.allowed_assoc_types)

    def answer(self, assoc):
        """Respond to this request with an X{association}.

        @param assoc: The association to send back.
        @type assoc: L{oidchannel.association.Association}

        @returns: A response with the association information, encrypted
            to the consumer's X{public key} if appropriate.
        @returntype: L{OpenIDResponse}
        """
        if not self.isSupported():
            raise ValueError('Cannot answer an unsupported %s/%s request'
                             % (self.assoc_type, self.session_type))
        self._decide(True)
        response = OpenIDResponse(self)
        response.fields.updateArgs(OPENID_NS, {
            'expires_in': '%d' % (assoc.getExpiresIn(),),
            'assoc_type': self.assoc_type,
            'assoc_handle': assoc.handle,
            })
        response.fields.updateArgs(OPENID_NS,
                                   self.session.answer(assoc.secret))

        if not (self.session.session_type == 'no-encryption' and
                self.message.isOpenID1()):
            # The session type "no-encryption" did not have a name
            # in OpenID v1, it was just omitted.
            response.fields.setArg(
                OPENID_NS, 'session_type', self.session.session_type)

        return response

    def answerUnsupported(self, text, preferred_association_type=None,
                          preferred_session_type=None):
        """Respond to this request indicating that the association
        type or association session type is not supported.

        The preferred pair is only offered to OpenID 2 Relying Parties.
        """
        self._decide(False)
        response = OpenIDResponse(self)
        response.fields.setArg(OPENID_NS, 'error', text)
        if self.message.isOpenID2():
            response.fields.setArg(OPENID_NS, 'error_code', 'unsupported-type')
            if preferred_association_type:
                response.fields.setArg(
                    OPENID_NS, 'assoc_type', preferred_association_type)
            if preferred_session_type:
                response.fields.setArg(
                    OPENID_NS, 'session_type', preferred_session_type)
        return response


class SignedResponseRequest(OpenIDRequest):
    """Common part of the requests answered with an assertion.

    @ivar immediate: Is this an immediate-mode request?
    @type immediate: bool

    @ivar trust_root: "Are you Frank?" asks the checkid request.  "Who wants
        to know?"  C{trust_root}, that's who.  This URL identifies the party
        making the request, and the user will use that to make her decision
        about what answer she trusts them to have.  Referred to as "realm" in
        OpenID 2.0.
    @type trust_root: str

    @ivar return_to: The URL to send the user agent back to to reply to this
        request.
    @type return_to: str

    @ivar assoc_handle: Provided in smart mode requests, a handle for a
        previously established association.  C{None} for dumb mode requests.
    @type assoc_handle: str
    """

    @classmethod
    def fromMessage(cls, message, op_endpoint):
        """Construct me from an OpenID message.

        @raises MalformedMessage: When the C{return_to} URL is not a URL.

        @param op_endpoint: The endpoint URL of the server that this
            message was sent to.
        """
        self = cls()
        self.message = message
        self.op_endpoint = op_endpoint
        self.mode = message.getArg(OPENID_NS, 'mode')
        self.immediate = self.mode == 'checkid_immediate'

        self.return_to = message.getArg(OPENID_NS, 'return_to')
        if message.isOpenID1():
            trust_root_param = 'trust_root'
        else:
            trust_root_param = 'realm'
        self.trust_root = (message.getArg(OPENID_NS, trust_root_param)
                           or self.return_to)
        self.assoc_handle = message.getArg(OPENID_NS, 'assoc_handle')

        # Using Realm.parse here is a bit misleading, as we're not
        # parsing return_to as a realm at all.  However, valid URLs
        # are valid realms, so we can use this to get an idea if it
        # is a valid URL.
        if self.return_to is not None and Realm.parse(self.return_to) is None:
            raise MalformedMessage(
                'Malformed return_to %r' % (self.return_to,), message)
        return self

    def trustRootValid(self):
        """Is my return_to under my trust_root?

        @returntype: bool
        """
        if not self.trust_root:
            return True
        tr = Realm.parse(self.trust_root)
        if tr is None:
            raise MalformedMessage(
                'Malformed realm %r' % (self.trust_root,), self.message)

        if self.return_to is not None:
            return tr.validateURL(self.return_to)
        else:
            return True

    def _answer(self, allow, setup_url=None):
        if self.return_to is None:
            raise NoReturnToError(
                'No return_to to send the answer to', self.message)
        if allow and not self.trustRootValid():
            raise UntrustedReturnURL(
                self.message, self.return_to, self.trust_root)
        if (not allow and self.immediate and self.message.isOpenID1() and
            not setup_url):
            raise ValueError('setup_url is required for allow=False '
                             'in OpenID 1.x immediate mode.')
        self._decide(allow)

        response = OpenIDResponse(self)
        fields = response.fields
        if allow:
            fields.setArg(OPENID_NS, 'mode', 'id_res')
            fields.setArg(OPENID_NS, 'return_to', self.return_to)
            if self.message.isOpenID2():
                fields.setArg(OPENID2_NS, 'op_endpoint', self.op_endpoint)
        elif self.immediate:
            if self.message.isOpenID1():
                fields.setArg(OPENID_NS, 'mode', 'id_res')
                fields.setArg(OPENID_NS, 'user_setup_url', setup_url)
            else:
                fields.setArg(OPENID_NS, 'mode', 'setup_needed')
        else:
            fields.setArg(OPENID_NS, 'mode', 'cancel')
        return response

    def getCancelURL(self):
        """Get the URL to cancel this request.

        Useful for creating a "Cancel" button on a web form so that operation
        can be carried out directly without another trip through the server.

        @returntype: str
        @returns: The return_to URL with openid.mode = cancel.
        """
        if not self.return_to:
            raise NoReturnToError(
                'No return_to to send the answer to', self.message)

        if self.immediate:
            raise ValueError("Cancel is not an appropriate response to "
                             "immediate mode requests.")

        response = Message(self.message.getOpenIDNamespace())
        response.setArg(OPENID_NS, 'mode', 'cancel')
        return response.toURL(self.return_to)


class CheckIDRequest(SignedResponseRequest):
    """A request to confirm the identity of a user.

    This class handles requests for openid modes X{C{checkid_immediate}}
    and X{C{checkid_setup}}.

    @ivar identity: The OP-local identifier being checked.
    @type identity: str

    @ivar claimed_id: The claimed identifier.  Not present in OpenID 1.x
        messages.
    @type claimed_id: str
    """

    @classmethod
    def fromMessage(cls, message, op_endpoint):
        self = super(CheckIDRequest, cls).fromMessage(message, op_endpoint)
        self.identity = message.getArg(OPENID_NS, 'identity')
        if message.isOpenID1():
            self.claimed_id = self.identity
        else:
            self.claimed_id = message.getArg(OPENID2_NS, 'claimed_id')
        return self

    def idSelect(self):
        """Is the identifier to be selected by the IDP?

        @returntype: bool
        """
        return self.identity == IDENTIFIER_SELECT

    def answer(self, allow, identity=None, claimed_id=None, setup_url=None):
        """Respond to this request.

        @param allow: Allow this user to claim this identity, and allow the
            consumer to have this information?
        @type allow: bool

        @param identity: The OP-local identifier to answer with.  Only for use
            when the relying party requested identifier selection.
        @type identity: str or None

        @param claimed_id: The claimed identifier to answer with, for use
            with identifier selection in the case where the claimed identifier
            and the OP-local identifier differ, i.e. when the claimed_id uses
            delegation.

            If C{identity} is provided but this is not, C{claimed_id} will
            default to the value of C{identity}.
        @type claimed_id: str or None

        @param setup_url: where the user can finish the process, for a
            negative answer to an OpenID 1 immediate request

        @returntype: L{OpenIDResponse}

        @raises UntrustedReturnURL: the return_to is not under the realm
        @raises OutOfSequence: the request has already been answered
        """
        if allow:
            if self.idSelect():
                if not identity:
                    raise ValueError(
                        "This request uses IdP-driven identifier selection."
                        "You must supply an identifier in the response.")
                response_identity = identity
                response_claimed_id = claimed_id or identity
            else:
                if identity and identity != self.identity:
                    raise ValueError(
                        "Request was for identity %r, cannot reply "
                        "with identity %r" % (self.identity, identity))
                response_identity = self.identity
                response_claimed_id = self.claimed_id

        response = self._answer(allow, setup_url)
        if allow:
            response.fields.setArg(OPENID_NS, 'identity', response_identity)
            if self.message.isOpenID2():
                response.fields.setArg(
                    OPENID2_NS, 'claimed_id', response_claimed_id)
        return response

    def __str__(self):
        return '<%s id:%r im:%s tr:%r ah:%r>' % (self.__class__.__name__,
                                                 self.identity,
                                                 self.immediate,
                                                 self.trust_root,
                                                 self.assoc_handle)


class AnonymousRequest(SignedResponseRequest):
    """An extension-only request: a checkid request carrying no
    identifier.  The Provider may answer it with extension data but
    never with an identity."""

    def answer(self, allow):
        """Respond to this request.

        @returntype: L{OpenIDResponse}
        """
        return self._answer(allow)

    def __str__(self):
        return '<%s im:%s tr:%r ah:%r>' % (self.__class__.__name__,
                                           self.immediate,
                                           self.trust_root,
                                           self.assoc_handle)


class OpenIDResponse(object):
    """I am a response to an OpenID request.

    @ivar request: The request I respond to.
    @type request: L{OpenIDRequest}

    @ivar fields: My parameters as a message object.
    @type fields: L{oidchannel.message.Message}
    """

    def __init__(self, request):
        self.request = request
        self.fields = Message(request.message.getOpenIDNamespace(),
                              request.message.implicit_aliases)

    def __str__(self):
        return "%s for %s: %s" % (
            self.__class__.__name__,
            self.request.__class__.__name__,
            self.fields)

    def whichEncoding(self):
        if self.request.mode in BROWSER_REQUEST_MODES:
            return ENCODE_URL
        else:
            return ENCODE_KVFORM

    def needsSigning(self):
        """Does this response require signing?

        @returntype: bool
        """
        return self.fields.kind() in SIGNED_KINDS

    def addExtension(self, extension_response):
        """
        Add an extension response to this response message.

        @param extension_response: An object that implements the
            extension interface for adding arguments to an OpenID
            message.
        @type extension_response: L{oidchannel.extension.Extension}
        """
        extension_response.toMessage(self.fields)


class WebResponse(object):
    """I am a response to an OpenID request in terms a web server
    understands.

    @ivar code: The HTTP code of this response.
    @type code: int

    @ivar headers: Headers to include in this response.
    @type headers: dict

    @ivar body: The body of this response.
    @type body: bytes or str
    """

    def __init__(self, code=HTTP_OK, headers=None, body=b""):
        self.code = code
        if headers is not None:
            self.headers = headers
        else:
            self.headers = {}
        self.body = body


class Signatory(object):
    """I sign things.

    I also check signatures.

    All my state is encapsulated in a store, which means I'm not
    generally pickleable but I am easy to reconstruct.

    @cvar SECRET_LIFETIME: The default lifetime for secrets, in seconds.
    """
    SECRET_LIFETIME = 14 * 24 * 60 * 60  # 14 days, in seconds

    # keys have a bogus server URL in them because the store
    # really does expect that key to be a URL.  This seems a little
    # silly for the server store, since I expect there to be only one
    # server URL.
    normal_key = 'http://localhost/|normal'
    dumb_key = 'http://localhost/|dumb'
    nonce_key = 'http://localhost/|nonce'

    def __init__(self, store, lifetime=None):
        """Create a new Signatory.

        @param store: The back-end where my associations are stored.
        @type store: L{oidchannel.store.interface.OpenIDStore}
        """
        assert store is not None
        self.store = store
        self.lifetime = lifetime if lifetime is not None else self.SECRET_LIFETIME

    def verify(self, assoc_handle, message):
        """Verify that the signature for some data is valid.

        @param assoc_handle: The handle of the association used to sign the
            data.
        @type assoc_handle: str

        @param message: The signed message to verify
        @type message: L{oidchannel.message.Message}

        @returns: C{True} if the signature is valid, C{False} if not.
        @returntype: bool
        """
        assoc = self.getAssociation(assoc_handle, dumb=True)
        if not assoc:
            logging.error("failed to get assoc with handle %r to verify "
                          "message" % (assoc_handle,))
            return False

        try:
            valid = assoc.checkMessageSignature(message)
        except InvalidSignature as why:
            logging.exception("Error in verifying %s with %s: %s"
                              % (message, assoc, why))
            return False
        return valid

    def sign(self, message, assoc_handle=None):
        """Sign a response message.

        I take an assertion, create a signature for everything in its
        signed list, and return a new copy of it with the signature
        attached.

        @param assoc_handle: the association the Relying Party asked to
            use.  When it is unknown or expired the message is signed
            with a private association and names the handle in
            C{invalidate_handle}.

        @returns: A signed copy of the message
        @returntype: L{oidchannel.message.Message}
        """
        if assoc_handle:
            # normal mode
            assoc = self.getAssociation(assoc_handle, dumb=False)
            if not assoc:
                # fall back to dumb mode
                message = message.copy()
                message.setArg(OPENID_NS, 'invalidate_handle', assoc_handle)
                assoc = self.createAssociation(dumb=True)
        else:
            # dumb mode.
            assoc = self.createAssociation(dumb=True)

        return assoc.signMessage(message)

    def createAssociation(self, dumb=True, assoc_type='HMAC-SHA1'):
        """Make a new association.

        @param dumb: Is this association for a dumb-mode transaction?
        @type dumb: bool

        @param assoc_type: The type of association to create.  Currently
            there are HMAC-SHA1 and HMAC-SHA256.
        @type assoc_type: str

        @returns: the new association.
        @returntype: L{oidchannel.association.Association}
        """
        secret = cryptutil.getBytes(getSecretSize(assoc_type))
        uniq = oidutil.toBase64(cryptutil.getBytes(4))
        handle = '{%s}{%x}{%s}' % (assoc_type, int(time.time()), uniq)

        assoc = Association.fromExpiresIn(
            self.lifetime, handle, secret, assoc_type)

        if dumb:
            key = self.dumb_key
        else:
            key = self.normal_key
        self.store.storeAssociation(key, assoc)
        return assoc

    def getAssociation(self, assoc_handle, dumb):
        """Get the association with the specified handle.

        @type assoc_handle: str

        @param dumb: Is this association used with dumb mode?
        @type dumb: bool

        @returns: the association, or None if no valid association with that
            handle was found.
        @returntype: L{oidchannel.association.Association}
        """
        if assoc_handle is None:
            raise ValueError("assoc_handle must not be None")

        if dumb:
            key = self.dumb_key
        else:
            key = self.normal_key
        return self.store.getAssociation(key, assoc_handle)

    def invalidate(self, assoc_handle, dumb):
        """Invalidates the association with the given handle.

        @type assoc_handle: str

        @param dumb: Is this association used with dumb mode?
        @type dumb: bool
        """
        if dumb:
            key = self.dumb_key
        else:
            key = self.normal_key
        self.store.removeAssociation(key, assoc_handle)


class Server(object):
    """I handle requests for an OpenID server.

    Some types of requests (those which are not C{checkid} requests) may be
    handed to my L{handleRequest} method, and I will take care of it and
    return a response.

    For your convenience, I also provide an interface to L{decodeRequest}
    and L{encodeResponse}.

    All my state is encapsulated in an L{OpenIDStore}, which means
    I'm not generally pickleable but I am easy to reconstruct.

    @ivar signatory: I'm using this for associate requests and to sign things.
    @type signatory: L{Signatory}

    @ivar negotiator: I use this to determine which kinds of
        associations I can make and how.
    @type negotiator: L{oidchannel.association.SessionNegotiator}

    @ivar op_endpoint: My URL.
    @type op_endpoint: str
    """
    signatoryClass = Signatory

    handlers = {
        protocol.ASSOCIATE_REQUEST: AssociateRequest.fromMessage,
        protocol.CHECKID_REQUEST: CheckIDRequest.fromMessage,
        protocol.EXTENSION_REQUEST: AnonymousRequest.fromMessage,
        protocol.CHECK_AUTH_REQUEST: CheckAuthRequest.fromMessage,
        }

    def __init__(self, store, op_endpoint, settings=None):
        """A new L{Server}.

        @param store: The back-end where my associations and nonces are
            stored.
        @type store: L{oidchannel.store.interface.OpenIDStore}

        @param op_endpoint: My URL, the fully qualified address of this
            server's endpoint, i.e. C{http://example.com/server}
        @type op_endpoint: str
        """
        self.store = store
        self.op_endpoint = op_endpoint
        self.channel = Channel(store, settings)
        self.settings = self.channel.settings
        self.signatory = self.signatoryClass(
            store, self.settings.association_lifetime)
        self.negotiator = default_negotiator.copy()

    def decodeRequest(self, query):
        """Transform query parameters into an L{OpenIDRequest}.

        @param query: The query parameters as a dictionary with each
            key mapping to one value.
        @type query: dict

        @raises ProtocolError: When the query does not seem to be a valid
            OpenID request.

        @returntype: L{OpenIDRequest}, or C{None} for an empty query
        """
        if not query:
            return None
        message = self.channel.decode(query, REQUEST_KINDS)
        return self.handlers[message.kind()](message, self.op_endpoint)

    def handleRequest(self, request):
        """Handle a request.

        Give me a request, I will give you a response.  Unless it's a type
        of request I cannot handle myself, in which case I will raise
        C{ValueError}.  In that case, you can handle it yourself.

        @param request: An associate or check_authentication request
        @returntype: L{OpenIDResponse}
        """
        handler = getattr(self, 'openid_' + request.mode, None)
        if handler is None:
            raise ValueError('%s requests are answered by the application'
                             % (request.mode,))
        return handler(request)

    def openid_check_authentication(self, request):
        """Handle and respond to C{check_authentication} requests.

        @returntype: L{OpenIDResponse}
        """
        return request.answer(self.signatory)

    def openid_associate(self, request):
        """Handle and respond to C{associate} requests.

        C{no-encryption} sessions are refused unless the settings allow
        them and this endpoint is https.

        @returntype: L{OpenIDResponse}
        """
        if self.channel.allowsPlaintext(self.op_endpoint):
            negotiator = self.negotiator
        else:
            negotiator = self.negotiator.withoutPlaintext()

        assoc_type = request.assoc_type
        session_type = request.session_type
        if request.isSupported() and negotiator.isAllowed(assoc_type,
                                                          session_type):
            assoc = self.signatory.createAssociation(dumb=False,
                                                     assoc_type=assoc_type)
            return request.answer(assoc)
        else:
            message = ('Association type %r is not supported with '
                       'session type %r' % (assoc_type, session_type))
            (preferred_assoc_type, preferred_session_type) = \
                                   negotiator.getAllowedType()
            return request.answerUnsupported(
                message,
                preferred_assoc_type,
                preferred_session_type)

    def encodeResponse(self, response):
        """Encode a response to a L{WebResponse}, signing it first if
        appropriate.

        @raises OutOfSequence: the response was already encoded

        @returntype: L{WebResponse}
        """
        request = response.request
        request.markSent()

        if response.whichEncoding() == ENCODE_KVFORM:
            if response.fields.kind() == protocol.ERROR:
                code = HTTP_ERROR
            else:
                code = HTTP_OK
            return WebResponse(code, {'Content-Type': 'text/plain'},
                               protocol.encode(response.fields, True))

        message = self.channel.prepare(
            response.fields, self.signatory, request.assoc_handle)
        return self._encodeIndirect(message, request.return_to)

    def _encodeIndirect(self, message, url):
        indirect = self.channel.redirect(message, url)
        if indirect.use_post:
            return WebResponse(
                HTTP_OK, {'Content-Type': 'text/html; charset=UTF-8'},
                indirect.htmlMarkup())
        return WebResponse(HTTP_REDIRECT, {'location': indirect.redirectURL()})

    def encodeError(self, error):
        """Encode a L{ProtocolError} raised while decoding or answering a
        request.

        Errors in browser requests that name a return_to are sent back to
        it as an indirect C{mode=error} message; everything else gets a
        400 key-value form reply.

        @returntype: L{WebResponse}
        """
        message = error.message
        if message is not None:
            namespace = message.getOpenIDNamespace()
            return_to = message.getArg(OPENID_NS, 'return_to')
            mode = message.getArg(OPENID_NS, 'mode')
        else:
            namespace = OPENID2_NS
            return_to = mode = None

        reply = Message(namespace)
        reply.setArg(OPENID_NS, 'error', str(error))
        if return_to and mode in BROWSER_REQUEST_MODES:
            reply.setArg(OPENID_NS, 'mode', 'error')
            return self._encodeIndirect(reply, return_to)

        return WebResponse(HTTP_ERROR, {'Content-Type': 'text/plain'},
                           protocol.encode(reply, True))
