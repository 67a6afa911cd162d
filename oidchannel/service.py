'''
The description of a Provider endpoint the Relying Party talks to.

Finding a L{Service} for an identifier (XRDS or HTML discovery) is the
job of a discovery collaborator: any callable taking an identifier and
returning a L{Service}.
'''
from oidchannel.message import OPENID1_NS, OPENID2_NS

OPENID_IDP_2_0_TYPE = 'http://specs.openid.net/auth/2.0/server'
OPENID_2_0_TYPE = 'http://specs.openid.net/auth/2.0/signon'
OPENID_1_1_TYPE = 'http://openid.net/signon/1.1'
OPENID_1_0_TYPE = 'http://openid.net/signon/1.0'

# OpenID service type URIs, listed in order of preference.
SERVICE_TYPES = [
    OPENID_IDP_2_0_TYPE,
    OPENID_2_0_TYPE,
    OPENID_1_1_TYPE,
    OPENID_1_0_TYPE,
]


class DiscoveryFailure(Exception):
    pass


class Service(object):
    """Object representing an OpenID service endpoint.

    @ivar types: service type URIs the endpoint advertises
    @ivar server_url: the OP endpoint URL
    @ivar claimed_id: the identifier the user entered, after discovery
    @ivar local_id: the OP-local identifier, if it differs
    """

    def __init__(self, types=None, server_url=None, claimed_id=None, local_id=None):
        self.types = types if types is not None else [OPENID_2_0_TYPE]
        self.server_url = server_url
        self.claimed_id = claimed_id
        self.local_id = local_id

    @classmethod
    def fromDict(cls, data):
        return cls(data.get('types'), data.get('server_url'),
                   data.get('claimed_id'), data.get('local_id'))

    def toDict(self):
        return {
            'types': list(self.types),
            'server_url': self.server_url,
            'claimed_id': self.claimed_id,
            'local_id': self.local_id,
        }

    def ns(self):
        return OPENID1_NS if self.compat_mode() else OPENID2_NS

    def compat_mode(self):
        return not (OPENID_IDP_2_0_TYPE in self.types or OPENID_2_0_TYPE in self.types)

    def usesExtension(self, extension_uri):
        return extension_uri in self.types

    def is_op_identifier(self):
        return OPENID_IDP_2_0_TYPE in self.types

    def identity(self):
        '''
        Return the identifier that should be sent as the
        openid.identity parameter to the server.
        '''
        return self.local_id or self.claimed_id

    def __eq__(self, other):
        if not isinstance(other, Service):
            return NotImplemented
        return self.toDict() == other.toDict()

    def __ne__(self, other):
        return not (self == other)

    def __str__(self):
        return '<%s server_url=%s claimed_id=%s local_id=%s>' % (
            self.__class__.__name__,
            self.server_url,
            self.claimed_id,
            self.local_id,
        )
