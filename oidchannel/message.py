"""Extension argument processing code and the protocol message model.

A L{Message} maps C{(namespace URI, key)} pairs to string values.  The
wire forms (POST arguments, URL query, key-value form, HTML form) are
produced and consumed here; L{decode} additionally classifies a message
into one of the closed set of message kinds and checks that the fields
its kind requires are present.
"""
import copy
import urllib.parse
import xml.etree.ElementTree as ElementTree

from oidchannel import kvform
from oidchannel import oidutil
from oidchannel.errors import MalformedMessage, UnsupportedVersion, \
     UnexpectedMessage, ConflictingExtension

__all__ = [
    'Message',
    'NamespaceMap',
    'decode',
    'encode',
    'kind',
    'no_default',
    'OPENID_NS',
    'BARE_NS',
    'OPENID1_NS',
    'OPENID2_NS',
    'SREG_URI',
    'IDENTIFIER_SELECT',
]

IDENTIFIER_SELECT = 'http://specs.openid.net/auth/2.0/identifier_select'

# URI for Simple Registration extension, the only commonly deployed
# OpenID 1.x extension, and so a special case
SREG_URI = 'http://openid.net/sreg/1.0'

# The OpenID 1.X namespace URI
OPENID1_NS = 'http://openid.net/signon/1.0'
THE_OTHER_OPENID1_NS = 'http://openid.net/signon/1.1'

OPENID1_NAMESPACES = OPENID1_NS, THE_OTHER_OPENID1_NS

# The OpenID 2.0 namespace URI
OPENID2_NS = 'http://specs.openid.net/auth/2.0'


class _Sentinel(object):
    """A marker namespace that keeps its identity through copies and
    pickling, so that messages can be compared against it after
    L{Message.copy}.
    """

    def __init__(self, name):
        self.name = name

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return self.name

    def __repr__(self):
        return '<%s>' % (self.name,)


# The namespace consisting of pairs with keys that are prefixed with
# "openid."  but not in another namespace.
NULL_NAMESPACE = _Sentinel('NULL_NAMESPACE')

# The null namespace, when it is an allowed OpenID namespace
OPENID_NS = _Sentinel('OPENID_NS')

# The top-level namespace, excluding all pairs with keys that start
# with "openid."
BARE_NS = _Sentinel('BARE_NS')

# Limit, in bytes, of identity provider and return_to URLs, including
# response payload.  See OpenID 1.1 specification, Appendix D.
OPENID1_URL_LIMIT = 2047

# All OpenID protocol fields.  Used to check namespace aliases.
OPENID_PROTOCOL_FIELDS = [
    'ns', 'mode', 'error', 'return_to', 'contact', 'reference',
    'signed', 'assoc_type', 'session_type', 'dh_modulus', 'dh_gen',
    'dh_consumer_public', 'claimed_id', 'identity', 'realm',
    'invalidate_handle', 'op_endpoint', 'response_nonce', 'sig',
    'assoc_handle', 'trust_root', 'openid',
    ]

# Sentinel used for Message implementation to indicate that getArg
# should raise an exception instead of returning a default.
no_default = object()

# Message kinds.  Every decoded message is exactly one of these.
ASSOCIATE_REQUEST = 'associate_request'
ASSOCIATE_RESPONSE = 'associate_response'
CHECKID_REQUEST = 'checkid_request'
EXTENSION_REQUEST = 'extension_request'
POSITIVE_ASSERTION = 'positive_assertion'
EXTENSION_RESPONSE = 'extension_response'
NEGATIVE_ASSERTION = 'negative_assertion'
CHECK_AUTH_REQUEST = 'check_auth_request'
CHECK_AUTH_RESPONSE = 'check_auth_response'
ERROR = 'error'

KINDS = [
    ASSOCIATE_REQUEST, ASSOCIATE_RESPONSE, CHECKID_REQUEST,
    EXTENSION_REQUEST, POSITIVE_ASSERTION, EXTENSION_RESPONSE,
    NEGATIVE_ASSERTION, CHECK_AUTH_REQUEST, CHECK_AUTH_RESPONSE, ERROR,
    ]

# kind -> (fields required by every version, OpenID 1 only, OpenID 2 only)
REQUIRED_FIELDS = {
    ASSOCIATE_REQUEST: (['assoc_type'], [], ['session_type']),
    ASSOCIATE_RESPONSE: (
        ['assoc_type', 'assoc_handle', 'expires_in'], [], ['session_type']),
    CHECKID_REQUEST: (['identity'], ['return_to'], ['claimed_id']),
    EXTENSION_REQUEST: ([], [], []),
    POSITIVE_ASSERTION: (
        ['return_to', 'assoc_handle', 'sig', 'signed', 'identity'], [],
        ['op_endpoint', 'response_nonce', 'claimed_id']),
    EXTENSION_RESPONSE: (
        ['return_to', 'assoc_handle', 'sig', 'signed'], [],
        ['op_endpoint', 'response_nonce']),
    NEGATIVE_ASSERTION: ([], [], []),
    CHECK_AUTH_REQUEST: (['assoc_handle', 'sig', 'signed'], [], []),
    CHECK_AUTH_RESPONSE: (['is_valid'], [], []),
    ERROR: (['error'], [], []),
    }


class UndefinedOpenIDNamespace(MalformedMessage):
    """Raised if the generic OpenID namespace is accessed when there
    is no OpenID namespace set for this message."""


class Message(object):
    """
    @ivar args: mapping of C{(namespace URI, key)} to value.  Bare
        (non-"openid.") arguments live under L{BARE_NS}.

    @ivar namespaces: the aliases of this message, see L{NamespaceMap}.
        Aliases are local to one message.
    """

    allowed_openid_namespaces = [OPENID1_NS, THE_OTHER_OPENID1_NS, OPENID2_NS]

    def __init__(self, openid_namespace=None, implicit_aliases=None):
        """Create an empty Message.

        @param implicit_aliases: alias -> namespace URI pairs that an
            OpenID 1 message may use without declaring them.
        """
        self.args = {}
        self.namespaces = NamespaceMap()
        self.implicit_aliases = dict(implicit_aliases or {})
        if openid_namespace is None:
            self._openid_ns_uri = None
        else:
            implicit = openid_namespace in OPENID1_NAMESPACES
            self.setOpenIDNamespace(openid_namespace, implicit)

    @classmethod
    def fromPostArgs(cls, args, implicit_aliases=None):
        """Construct a Message containing a set of POST arguments.

        @raises MalformedMessage: if an argument has more than one value
            or is not valid UTF-8
        """
        self = cls(implicit_aliases=implicit_aliases)

        # Partition into "openid." args and bare args
        openid_args = {}
        for key, value in args.items():
            if isinstance(value, (list, tuple)):
                if len(value) != 1:
                    raise MalformedMessage(
                        'query dict must have one value for each key, '
                        'not lists of values.  Query is %r' % (args,))
                value = value[0]
            try:
                if isinstance(key, bytes):
                    key = key.decode('utf-8')
                if isinstance(value, bytes):
                    value = value.decode('utf-8')
            except UnicodeDecodeError as why:
                raise MalformedMessage(
                    'Argument %r is not UTF-8: %s' % (key, why))

            try:
                prefix, rest = key.split('.', 1)
            except ValueError:
                prefix = None

            if prefix != 'openid':
                self.args[(BARE_NS, key)] = value
            else:
                openid_args[rest] = value

        self._fromOpenIDArgs(openid_args)

        return self

    @classmethod
    def fromOpenIDArgs(cls, openid_args, implicit_aliases=None):
        """Construct a Message from a parsed KVForm message.

        @raises UnsupportedVersion: if openid.ns is not in
            L{Message.allowed_openid_namespaces}
        """
        self = cls(implicit_aliases=implicit_aliases)
        self._fromOpenIDArgs(openid_args)
        return self

    def _fromOpenIDArgs(self, openid_args):
        ns_args = []

        # Resolve namespaces
        for rest, value in openid_args.items():
            try:
                ns_alias, ns_key = rest.split('.', 1)
            except ValueError:
                ns_alias = NULL_NAMESPACE
                ns_key = rest

            if ns_alias == 'ns':
                self.namespaces.addAlias(value, ns_key)
            elif ns_alias == NULL_NAMESPACE and ns_key == 'ns':
                # null namespace
                self.setOpenIDNamespace(value, False)
            else:
                ns_args.append((ns_alias, ns_key, value))

        # Implicitly set an OpenID namespace definition (OpenID 1)
        if not self.getOpenIDNamespace():
            self.setOpenIDNamespace(OPENID1_NS, True)

        # Actually put the pairs into the appropriate namespaces
        for (ns_alias, ns_key, value) in ns_args:
            ns_uri = self.namespaces.getNamespaceURI(ns_alias)
            if ns_uri is None:
                # we found a namespaced arg without a namespace URI defined
                ns_uri = self._getDefaultNamespace(ns_alias)
                if ns_uri is None:
                    ns_uri = self.getOpenIDNamespace()
                    ns_key = '%s.%s' % (ns_alias, ns_key)
                else:
                    self.namespaces.addAlias(ns_uri, ns_alias, implicit=True)

            self.setArg(ns_uri, ns_key, value)

    def _getDefaultNamespace(self, mystery_alias):
        """OpenID 1 compatibility: look for a default namespace URI to
        use for this alias."""
        # Only try to map an alias to a default if it's an
        # OpenID 1.x message.
        if self.isOpenID1():
            return self.implicit_aliases.get(mystery_alias)
        else:
            return None

    def setOpenIDNamespace(self, openid_ns_uri, implicit):
        if openid_ns_uri not in self.allowed_openid_namespaces:
            raise UnsupportedVersion(
                'Invalid null namespace: %r' % (openid_ns_uri,))

        self.namespaces.addAlias(openid_ns_uri, NULL_NAMESPACE, implicit)
        self._openid_ns_uri = openid_ns_uri

    def getOpenIDNamespace(self):
        return self._openid_ns_uri

    def isOpenID1(self):
        return self.getOpenIDNamespace() in OPENID1_NAMESPACES

    def isOpenID2(self):
        return self.getOpenIDNamespace() == OPENID2_NS

    @classmethod
    def fromKVForm(cls, kvform_string):
        """Create a Message from a KVForm string"""
        return cls.fromOpenIDArgs(kvform.kvToDict(kvform_string))

    def copy(self):
        return copy.deepcopy(self)

    def toPostArgs(self):
        """Return all arguments with openid. in front of namespaced
        arguments.
        """
        args = {}

        # Add namespace definitions to the output
        for ns_uri, alias in self.namespaces.items():
            if self.namespaces.isImplicit(ns_uri):
                continue
            if alias == NULL_NAMESPACE:
                ns_key = 'openid.ns'
            else:
                ns_key = 'openid.ns.' + alias
            args[ns_key] = ns_uri

        for (ns_uri, ns_key), value in self.args.items():
            key = self.getKey(ns_uri, ns_key)
            args[key] = value

        return args

    def toArgs(self):
        """Return all namespaced arguments, failing if any
        non-namespaced arguments exist."""
        # FIXME - undocumented exception
        post_args = self.toPostArgs()
        kvargs = {}
        for k, v in post_args.items():
            if not k.startswith('openid.'):
                raise ValueError(
                    'This message can only be encoded as a POST, because it '
                    'contains arguments that are not prefixed with "openid."')
            else:
                kvargs[k[7:]] = v

        return kvargs

    def toFormElement(self, action_url, form_tag_attrs=None,
                      submit_text='Continue'):
        """Build an HTML form element with this message's arguments as
        hidden inputs.

        @param action_url: The URL to which the form will be POSTed
        @type action_url: str

        @param form_tag_attrs: Dictionary of attributes to be added to
            the form tag. 'accept-charset' and 'enctype' have defaults
            that can be overridden. If a value is supplied for
            'action' or 'method', it will be replaced.
        @type form_tag_attrs: {str: str}

        @param submit_text: The text that will appear on the submit
            button for this form.
        @type submit_text: str

        @rtype: xml.etree.ElementTree.Element
        """
        form = ElementTree.Element('form')

        if form_tag_attrs:
            for name, attr in form_tag_attrs.items():
                form.attrib[name] = attr

        form.attrib['action'] = action_url
        form.attrib['method'] = 'post'
        form.attrib.setdefault('accept-charset', 'UTF-8')
        form.attrib.setdefault('enctype', 'application/x-www-form-urlencoded')

        for name, value in sorted(self.toPostArgs().items()):
            attrs = {'type': 'hidden', 'name': name, 'value': value}
            form.append(ElementTree.Element('input', attrs))

        submit = ElementTree.Element(
            'input', {'type': 'submit', 'value': submit_text})
        form.append(submit)

        return form

    def toFormMarkup(self, action_url, form_tag_attrs=None,
                     submit_text='Continue'):
        """Generate HTML form markup that contains the values in this
        message, to be HTTP POSTed as x-www-form-urlencoded UTF-8.

        @see: L{toFormElement}
        @rtype: str
        """
        return oidutil.serializeElement(
            self.toFormElement(action_url, form_tag_attrs, submit_text))

    def toURL(self, base_url):
        """Generate a GET URL with the parameters in this message
        attached as query parameters."""
        return oidutil.appendArgs(base_url, self.toPostArgs())

    def toKVForm(self):
        """Generate a KVForm string that contains the parameters in
        this message. This will fail if the message contains arguments
        outside of the 'openid.' prefix.
        """
        return kvform.dictToKV(self.toArgs())

    def toURLEncoded(self):
        """Generate an x-www-urlencoded string"""
        args = sorted(self.toPostArgs().items())
        return urllib.parse.urlencode(args)

    def _fixNS(self, namespace):
        """Convert an input value into the internally used values of
        this object

        @param namespace: The string or constant to convert
        @type namespace: str or BARE_NS or OPENID_NS
        """
        if namespace == OPENID_NS:
            if self._openid_ns_uri is None:
                raise UndefinedOpenIDNamespace('OpenID namespace not set')
            else:
                namespace = self._openid_ns_uri

        if namespace != BARE_NS and not isinstance(namespace, str):
            raise TypeError(
                "Namespace must be BARE_NS, OPENID_NS or a string. got %r"
                % (namespace,))

        return namespace

    def hasKey(self, namespace, ns_key):
        namespace = self._fixNS(namespace)
        return (namespace, ns_key) in self.args

    def getKey(self, namespace, ns_key):
        """Get the key for a particular namespaced argument"""
        namespace = self._fixNS(namespace)
        if namespace == BARE_NS:
            return ns_key

        ns_alias = self.namespaces.getAlias(namespace)

        # No alias is defined, so no key can exist
        if ns_alias is None:
            return None

        if ns_alias == NULL_NAMESPACE:
            tail = ns_key
        else:
            tail = '%s.%s' % (ns_alias, ns_key)

        return 'openid.' + tail

    def getArg(self, namespace, key, default=None):
        """Get a value for a namespaced key.

        @param namespace: The namespace in the message for this key
        @type namespace: str

        @param key: The key to get within this namespace
        @type key: str

        @param default: The value to use if this key is absent from
            this message. Using the special value
            oidchannel.message.no_default will result in this method
            raising a KeyError instead of returning the default.

        @rtype: str or the type of default
        @raises KeyError: if default is no_default
        @raises UndefinedOpenIDNamespace: if the message has not yet
            had an OpenID namespace set
        """
        namespace = self._fixNS(namespace)
        args_key = (namespace, key)
        try:
            return self.args[args_key]
        except KeyError:
            if default is no_default:
                raise KeyError((namespace, key))
            else:
                return default

    def getArgs(self, namespace):
        """Get the arguments that are defined for this namespace URI

        @returns: mapping from namespaced keys to values
        @returntype: dict
        """
        namespace = self._fixNS(namespace)
        return dict(
            (key, value)
            for ((pair_ns, key), value) in self.args.items()
            if pair_ns == namespace)

    def updateArgs(self, namespace, updates):
        """Set multiple key/value pairs in one call

        @param updates: The values to set
        @type updates: {str:str}
        """
        namespace = self._fixNS(namespace)
        for k, v in updates.items():
            self.setArg(namespace, k, v)

    def setArg(self, namespace, key, value):
        """Set a single argument in this namespace"""
        assert key is not None
        assert value is not None
        namespace = self._fixNS(namespace)
        self.args[(namespace, key)] = value
        if not (namespace is BARE_NS):
            self.namespaces.add(namespace)

    def delArg(self, namespace, key):
        namespace = self._fixNS(namespace)
        del self.args[(namespace, key)]

    def getAliasedArg(self, aliased_key, default=None):
        if aliased_key == 'ns':
            return self.getOpenIDNamespace()

        if aliased_key.startswith('ns.'):
            uri = self.namespaces.getNamespaceURI(aliased_key[3:])
            if uri is None:
                if default == no_default:
                    raise KeyError(aliased_key)
                return default
            return uri

        try:
            alias, key = aliased_key.split('.', 1)
        except ValueError:
            # need more than x values to unpack
            ns = None
        else:
            ns = self.namespaces.getNamespaceURI(alias)

        if ns is None:
            key = aliased_key
            ns = self.getOpenIDNamespace()

        return self.getArg(ns, key, default)

    def setup_url(self):
        """The OpenID 1 user_setup_url of an immediate-mode negative
        assertion, or None."""
        if self.isOpenID1():
            return self.getArg(OPENID_NS, 'user_setup_url')
        return None

    def kind(self):
        return kind(self)

    def __repr__(self):
        return '<%s.%s %r>' % (self.__class__.__module__,
                               self.__class__.__name__,
                               self.args)

    def __eq__(self, other):
        if not isinstance(other, Message):
            return NotImplemented
        return self.args == other.args

    def __ne__(self, other):
        return not (self == other)


class NamespaceMap(object):
    """Maintains a bijective map between namespace uris and aliases.
    """
    def __init__(self):
        self.alias_to_namespace = {}
        self.namespace_to_alias = {}
        self.implicit_namespaces = []

    def getAlias(self, namespace_uri):
        return self.namespace_to_alias.get(namespace_uri)

    def getNamespaceURI(self, alias):
        return self.alias_to_namespace.get(alias)

    def iterNamespaceURIs(self):
        """Return an iterator over the namespace URIs"""
        return iter(self.namespace_to_alias)

    def iterAliases(self):
        """Return an iterator over the aliases"""
        return iter(self.alias_to_namespace)

    def items(self):
        """Iterate over the mapping

        @returns: iterator of (namespace_uri, alias)
        """
        return self.namespace_to_alias.items()

    def addAlias(self, namespace_uri, desired_alias, implicit=False):
        """Add an alias from this namespace URI to the desired alias

        @raises ConflictingExtension: if the alias or the namespace is
            already mapped to something else
        @raises MalformedMessage: if the alias is not usable
        """
        if desired_alias in OPENID_PROTOCOL_FIELDS:
            raise MalformedMessage(
                '%r is not an allowed namespace alias' % (desired_alias,))

        # Check that desired_alias does not contain a period as per
        # the OpenID 2.0 specification.
        if isinstance(desired_alias, str):
            if '.' in desired_alias:
                raise MalformedMessage(
                    '%r must not contain a dot' % (desired_alias,))

        # Check that there is not a namespace already defined for
        # the desired alias
        current_namespace_uri = self.alias_to_namespace.get(desired_alias)
        if (current_namespace_uri is not None
            and current_namespace_uri != namespace_uri):

            fmt = ('Cannot map %r to alias %r. '
                   '%r is already mapped to alias %r')

            msg = fmt % (
                namespace_uri,
                desired_alias,
                current_namespace_uri,
                desired_alias)
            raise ConflictingExtension(msg)

        # Check that there is not already a (different) alias for
        # this namespace URI
        alias = self.namespace_to_alias.get(namespace_uri)
        if alias is not None and alias != desired_alias:
            fmt = ('Cannot map %r to alias %r. '
                   'It is already mapped to alias %r')
            raise ConflictingExtension(
                fmt % (namespace_uri, desired_alias, alias))

        if alias == desired_alias:
            return desired_alias

        self.alias_to_namespace[desired_alias] = namespace_uri
        self.namespace_to_alias[namespace_uri] = desired_alias
        if implicit:
            self.implicit_namespaces.append(namespace_uri)
        return desired_alias

    def add(self, namespace_uri):
        """Add this namespace URI to the mapping, without caring what
        alias it ends up with"""
        # See if this namespace is already mapped to an alias
        alias = self.namespace_to_alias.get(namespace_uri)
        if alias is not None:
            return alias

        # Fall back to generating a numerical alias
        i = 0
        while True:
            alias = 'ext' + str(i)
            try:
                self.addAlias(namespace_uri, alias)
            except ConflictingExtension:
                i += 1
            else:
                return alias

        assert False, "Not reached"

    def isDefined(self, namespace_uri):
        return namespace_uri in self.namespace_to_alias

    def __contains__(self, namespace_uri):
        return self.isDefined(namespace_uri)

    def isImplicit(self, namespace_uri):
        return namespace_uri in self.implicit_namespaces


def kind(message):
    """Classify a message.

    The classification is a closed set, see L{KINDS}.  An OpenID 2
    checkid request or id_res response without C{openid.identity} is an
    extension-only request or response, never an identity assertion.

    @rtype: str or None
    """
    mode = message.getArg(OPENID_NS, 'mode')
    has_identity = message.hasKey(OPENID_NS, 'identity')

    if mode == 'associate':
        return ASSOCIATE_REQUEST
    elif mode in ('checkid_setup', 'checkid_immediate'):
        if message.isOpenID2() and not has_identity:
            return EXTENSION_REQUEST
        return CHECKID_REQUEST
    elif mode == 'id_res':
        if message.setup_url():
            return NEGATIVE_ASSERTION
        if message.isOpenID2() and not has_identity:
            return EXTENSION_RESPONSE
        return POSITIVE_ASSERTION
    elif mode in ('cancel', 'setup_needed'):
        return NEGATIVE_ASSERTION
    elif mode == 'check_authentication':
        return CHECK_AUTH_REQUEST
    elif mode == 'error':
        return ERROR
    elif mode is not None:
        return None

    # Direct responses carry no mode
    if message.hasKey(OPENID_NS, 'error'):
        return ERROR
    elif message.hasKey(OPENID_NS, 'is_valid'):
        return CHECK_AUTH_RESPONSE
    return ASSOCIATE_RESPONSE


def requiredFields(message, message_kind):
    common, openid1, openid2 = REQUIRED_FIELDS[message_kind]
    if message.isOpenID1():
        return common + openid1
    return common + openid2


def decode(args, expected=None, implicit_aliases=None):
    """Parse and validate an incoming message.

    @param args: POST/query arguments, key-value form bytes (a direct
        response) or an already constructed L{Message}.

    @param expected: kind or kinds the caller is prepared to handle.
        C{None} accepts any kind.

    @raises MalformedMessage: the message can't be parsed, has an
        unknown mode or lacks fields its kind requires
    @raises UnsupportedVersion: openid.ns names an unknown protocol
    @raises UnexpectedMessage: the kind is not one of C{expected}

    @rtype: L{Message}
    """
    if isinstance(args, Message):
        message = args
    elif isinstance(args, (bytes, str)):
        try:
            message = Message.fromKVForm(args)
        except kvform.KVFormError as why:
            raise MalformedMessage(str(why))
    else:
        message = Message.fromPostArgs(args, implicit_aliases)

    message_kind = kind(message)
    if message_kind is None:
        raise MalformedMessage(
            'Unknown mode: %r' % (message.getArg(OPENID_NS, 'mode'),),
            message)

    if expected is not None:
        if isinstance(expected, str):
            expected = (expected,)
        if message_kind not in expected:
            raise UnexpectedMessage(
                'Expected %s, got %s' % (' or '.join(expected), message_kind),
                message)

    missing = [
        f for f in requiredFields(message, message_kind)
        if not message.hasKey(OPENID_NS, f)
    ]
    if missing:
        raise MalformedMessage(
            'Missing fields for %s: %s' % (message_kind, ', '.join(missing)),
            message)

    if (message_kind in (CHECKID_REQUEST, EXTENSION_REQUEST) and
        not (message.hasKey(OPENID_NS, 'return_to') or
             message.hasKey(OPENID_NS, 'realm'))):
        raise MalformedMessage(
            'openid.realm or openid.return_to is required', message)

    return message


def encode(message, direct):
    """Produce the wire form of a message.

    @param direct: C{True} for a response to a direct request, which
        is sent as key-value form; otherwise the POST arguments of a
        request or an indirect message.

    @rtype: bytes or dict
    """
    if direct:
        return message.toKVForm().encode('utf-8')
    return message.toPostArgs()
