"""Module containing a cryptographic hash implementation, an HMAC
implementation and the integer encodings the protocol uses on the wire.
"""
import base64
import hashlib
import hmac
import os
import random

__all__ = [
    'base64ToLong',
    'binaryToLong',
    'const_eq',
    'getBytes',
    'hmacSha1',
    'hmacSha256',
    'longToBase64',
    'longToBinary',
    'randomString',
    'randrange',
    'sha1',
    'sha256',
]

_rng = random.SystemRandom()

randrange = _rng.randrange


def getBytes(n):
    return os.urandom(n)


def hmacSha1(key, text):
    return hmac.new(key, text, hashlib.sha1).digest()


def sha1(s):
    return hashlib.sha1(s).digest()


def hmacSha256(key, text):
    return hmac.new(key, text, hashlib.sha256).digest()


def sha256(s):
    return hashlib.sha256(s).digest()


def longToBinary(value):
    '''
    Big-endian two's complement representation of a non-negative
    integer, with a leading zero byte when the high bit would be set.
    '''
    if value < 0:
        raise ValueError('This function only supports non-negative integers')
    return value.to_bytes(value.bit_length() // 8 + 1, 'big')


def binaryToLong(s):
    return int.from_bytes(s, 'big')


def longToBase64(value):
    return base64.b64encode(longToBinary(value)).decode('ascii')


def base64ToLong(s):
    return binaryToLong(base64.b64decode(s, validate=True))


def randomString(length, chars=None):
    """Produce a string of length random bytes, chosen from chars.

    If chars is None, the result is a bytes object of random bytes,
    otherwise a str made of characters from chars.
    """
    if chars is None:
        return getBytes(length)
    return ''.join(_rng.choice(chars) for _ in range(length))


def const_eq(s1, s2):
    '''
    Compares two signatures in time independent of where they differ.
    '''
    if isinstance(s1, str):
        s1 = s1.encode('utf-8')
    if isinstance(s2, str):
        s2 = s2.encode('utf-8')
    return hmac.compare_digest(s1, s2)
