'''
Configuration shared by the channel, the Relying Party and the Provider.

There is no process-wide configuration: a L{Settings} instance is passed
explicitly to whatever needs it, and anything constructed without one
uses the class defaults.
'''
import copy

from oidchannel import fetchers
from oidchannel.message import SREG_URI


class Settings(object):
    """
    @cvar allow_no_encryption: whether C{no-encryption} association
        sessions may be requested or granted.  Even when set they are
        only used with https endpoints.

    @cvar stateless_fallback: verify assertions with an unknown
        association handle by asking the Provider directly
        (C{check_authentication}) instead of failing them.

    @cvar max_redirect_url: indirect OpenID 2 messages whose URL would
        be longer than this are sent as an auto-submitting form.

    @cvar user_agent: User-Agent header of direct requests.

    @cvar openid1_aliases: namespace aliases OpenID 1 messages may use
        without declaring them.

    @cvar association_lifetime: lifetime in seconds of associations a
        Provider hands out.

    @cvar require_openid2: reject OpenID 1 messages outright.
    """
    allow_no_encryption = False
    stateless_fallback = True
    max_redirect_url = 2048
    user_agent = fetchers.USER_AGENT
    openid1_aliases = {'sreg': SREG_URI}
    association_lifetime = 14 * 24 * 60 * 60
    require_openid2 = False

    def __init__(self, **kwargs):
        # Copy the mutable default so that instances can't change it
        # for each other.
        self.openid1_aliases = copy.copy(self.openid1_aliases)
        for name, value in kwargs.items():
            if name.startswith('_') or name not in vars(Settings):
                raise TypeError('Unknown setting: %r' % (name,))
            setattr(self, name, value)

    def __repr__(self):
        return '<%s %s>' % (self.__class__.__name__, ' '.join(
            '%s=%r' % (name, getattr(self, name))
            for name in sorted(vars(Settings))
            if not name.startswith('_')))
