'''
Exceptions for everything that can go wrong while reading, verifying or
sending a protocol message.

Every failure the channel reports is a L{ProtocolError}; callers that care
about the reason catch the specific subclass.
'''


class ProtocolError(ValueError):
    """A message violated the protocol.

    @ivar message: the L{Message<oidchannel.message.Message>} that caused
        the error, or C{None} if it could not be parsed at all.
    """
    def __init__(self, text, message=None):
        super().__init__(text)
        self.message = message


class MalformedMessage(ProtocolError):
    """Required fields are missing or a field has an invalid value."""


class UnsupportedVersion(ProtocolError):
    """The message declares a protocol version we don't speak."""


class InvalidSignature(ProtocolError):
    """The signature on an assertion could not be verified."""


class AssociationNotFound(InvalidSignature):
    """The association a message refers to is unknown, expired or was
    invalidated, and it could not be verified any other way."""


class ReplayedNonce(ProtocolError):
    """The nonce has already been seen."""


class ExpiredNonce(ProtocolError):
    """The nonce timestamp is outside of the accepted window."""


class ConflictingExtension(ProtocolError):
    """Two extensions claim the same namespace or alias in one message."""


class CommunicationFailure(ProtocolError):
    """The transport could not complete a direct request."""


class OutOfSequence(ProtocolError):
    """A message arrived in the wrong phase of the handshake."""


class UnexpectedMessage(OutOfSequence):
    """A message of a different kind than the one expected arrived."""
