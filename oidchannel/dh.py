from oidchannel import cryptutil


def strxor(x, y):
    if len(x) != len(y):
        raise ValueError('Inputs to strxor must have the same length')

    return bytes(a ^ b for a, b in zip(x, y))


class DiffieHellman(object):
    DEFAULT_MOD = int(
        'DCF93A0B883972EC0E19989AC5A2CE310E1D37717E8D9571BB7623731866E61E'
        'F75A2E27898B057F9891C2E27A639C3F29B60814581CD3B2CA3986D268370557'
        '7D45C2E7E52DC81C7A171876E5CEA74B1448BFDFAF18828EFD2519F14E45E382'
        '6634AF1949E5B535CC829A483B8A76223E5D490A257F05BDFF16F2FB22C583AB',
        16)

    DEFAULT_GEN = 2

    @classmethod
    def fromDefaults(cls):
        return cls(cls.DEFAULT_MOD, cls.DEFAULT_GEN)

    def __init__(self, modulus, generator, private=None):
        self.modulus = int(modulus)
        self.generator = int(generator)

        if private is None:
            private = cryptutil.randrange(1, self.modulus - 1)
        self._setPrivate(private)

    def _setPrivate(self, private):
        """This is here to make testing easier"""
        self.private = private
        self.public = pow(self.generator, self.private, self.modulus)

    def usingDefaultValues(self):
        return (self.modulus == self.DEFAULT_MOD and
                self.generator == self.DEFAULT_GEN)

    def getSharedSecret(self, composite):
        """g^xy mod p for the peer's public value C{composite}.

        @raises ValueError: if the peer's public value is out of range
        """
        if not 1 < composite < self.modulus:
            raise ValueError('Public value out of range')
        return pow(composite, self.private, self.modulus)

    def xorSecret(self, composite, secret, hash_func):
        dh_shared = self.getSharedSecret(composite)
        hashed_dh_shared = hash_func(cryptutil.longToBinary(dh_shared))
        return strxor(secret, hashed_dh_shared)
