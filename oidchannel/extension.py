'''
Multiplexing of extension payloads in and out of protocol messages.

An extension payload is a flat mapping of strings under one namespace
URI.  The channel never looks inside payloads; it only gives every
namespace an alias that is unique within the message carrying it.
'''
from oidchannel.errors import ConflictingExtension
from oidchannel.message import Message, NULL_NAMESPACE


def attach(message, ns_uri, payload, alias=None):
    """Add an extension payload to a message.

    @param alias: preferred alias.  A generated alias is used when it
        is taken by another namespace, and the namespace keeps its
        alias if the message already declares it.

    @raises ConflictingExtension: if the message already carries
        arguments in C{ns_uri}
    """
    if ns_uri == message.getOpenIDNamespace():
        raise ConflictingExtension(
            'Extension namespace %r is the protocol namespace' % (ns_uri,),
            message)
    if message.getArgs(ns_uri):
        raise ConflictingExtension(
            'Message already has arguments in %r' % (ns_uri,), message)

    namespaces = message.namespaces
    if namespaces.getAlias(ns_uri) is None:
        if alias is not None and namespaces.getNamespaceURI(alias) is None:
            # OpenID 1 only knows the aliases both sides agreed on
            # beforehand, and those are never declared.
            implicit = (message.isOpenID1() and
                        message.implicit_aliases.get(alias) == ns_uri)
            namespaces.addAlias(ns_uri, alias, implicit=implicit)
        else:
            namespaces.add(ns_uri)

    message.updateArgs(ns_uri, payload)
    return message


def extract(message):
    """Get every extension payload in a message.

    @returns: mapping of namespace URI to payload
    @rtype: {str: {str: str}}
    """
    payloads = {}
    for ns_uri, alias in message.namespaces.items():
        if alias == NULL_NAMESPACE:
            continue
        args = message.getArgs(ns_uri)
        if args:
            payloads[ns_uri] = args
    return payloads


class Extension(object):
    """An interface for OpenID extensions.

    @ivar ns_uri: The namespace to which to add the arguments for this
        extension
    """
    ns_uri = None
    ns_alias = None

    def getExtensionArgs(self):
        """Get the string arguments that should be added to an OpenID
        message for this extension.

        @returns: A dictionary of completely non-namespaced arguments
            to be added. For example, if the extension's alias is
            'uncle', and this method returns {'meat':'Hot Rats'}, the
            final message will contain {'openid.uncle.meat':'Hot Rats'}
        """
        raise NotImplementedError

    def toMessage(self, message=None):
        """Add the arguments from this extension to the provided
        message, or create a new message containing only those
        arguments.

        @returns: The message with the extension arguments added
        """
        if message is None:
            message = Message()
        return attach(message, self.ns_uri, self.getExtensionArgs(),
                      self.ns_alias)
