import time
import unittest

from oidchannel import channel as channel_module
from oidchannel import message as protocol
from oidchannel.association import Association
from oidchannel.channel import Channel, Handshake, ServerError, \
     ASSOCIATE, CHECKID, ASSERTION
from oidchannel.errors import MalformedMessage, UnsupportedVersion, \
     InvalidSignature, AssociationNotFound, ReplayedNonce, ExpiredNonce, \
     CommunicationFailure, OutOfSequence, UnexpectedMessage
from oidchannel.message import Message, OPENID_NS, OPENID1_NS, OPENID2_NS, \
     BARE_NS
from oidchannel.settings import Settings
from oidchannel.store import nonce
from oidchannel.store.memstore import MemoryStore
from oidchannel.test import support

SERVER_URL = 'http://op.example.com/server'


class HandshakeTest(unittest.TestCase):
    def test_full_sequence(self):
        handshake = Handshake()
        for phase in [ASSOCIATE, CHECKID, ASSERTION]:
            handshake.advance(phase)
        self.assertEqual(ASSERTION, handshake.phase)

    def test_associate_is_optional(self):
        handshake = Handshake()
        handshake.advance(CHECKID)
        handshake.advance(ASSERTION)

    def test_associate_may_repeat(self):
        handshake = Handshake()
        handshake.advance(ASSOCIATE)
        handshake.advance(ASSOCIATE)
        self.assertEqual(ASSOCIATE, handshake.phase)

    def test_duplicate_checkid(self):
        handshake = Handshake(CHECKID)
        self.assertRaises(OutOfSequence, handshake.advance, CHECKID)

    def test_duplicate_assertion(self):
        handshake = Handshake(ASSERTION)
        self.assertRaises(OutOfSequence, handshake.advance, ASSERTION)

    def test_backwards(self):
        handshake = Handshake(CHECKID)
        self.assertRaises(OutOfSequence, handshake.advance, ASSOCIATE)

    def test_assertion_without_request(self):
        self.assertRaises(OutOfSequence, Handshake().advance, ASSERTION)
        self.assertRaises(OutOfSequence, Handshake(ASSOCIATE).advance,
                          ASSERTION)

    def test_unknown_phase(self):
        self.assertRaises(ValueError, Handshake, 'discovery')
        self.assertRaises(ValueError, Handshake().advance, 'discovery')

    def test_restored_from_phase(self):
        handshake = Handshake(Handshake(CHECKID).phase)
        handshake.advance(ASSERTION)


class ChannelTestBase(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.settings = Settings()
        self.channel = Channel(self.store, self.settings)

    def associateRequest(self):
        return Message.fromOpenIDArgs({
            'ns': OPENID2_NS,
            'mode': 'associate',
            'assoc_type': 'HMAC-SHA1',
            'session_type': 'DH-SHA1',
        })


class ChannelConstructionTest(unittest.TestCase):
    def test_store_required(self):
        self.assertRaises(ValueError, Channel, None)

    def test_defaults(self):
        channel = Channel(MemoryStore())
        self.assertEqual(2048, channel.settings.max_redirect_url)

    def test_unknown_setting(self):
        self.assertRaises(TypeError, Settings, max_url=10)


class SendTest(support.CatchLogs, ChannelTestBase):
    def setUp(self):
        support.CatchLogs.setUp(self)
        ChannelTestBase.setUp(self)

    def send(self, transport, expected=protocol.ASSOCIATE_RESPONSE):
        self.channel.transport = transport
        return self.channel.send(self.associateRequest(), SERVER_URL, expected)

    def test_success(self):
        transport = support.transportReturning(
            200, b'ns:' + OPENID2_NS.encode() + b'\nassoc_type:HMAC-SHA1\n'
            b'assoc_handle:h\nexpires_in:600\nsession_type:DH-SHA1\n')
        reply = self.send(transport)
        self.assertEqual(protocol.ASSOCIATE_RESPONSE, reply.kind())

        url, body, headers = transport.calls[0]
        self.assertEqual(SERVER_URL, url)
        self.assertIn('openid.mode=associate', body)
        self.assertEqual(self.settings.user_agent, headers['User-Agent'])
        self.assertEqual('application/x-www-form-urlencoded',
                         headers['Content-Type'])

    def test_no_response(self):
        transport = support.transportReturning(None, error='timed out')
        self.assertRaises(CommunicationFailure, self.send, transport)

    def test_server_error(self):
        transport = support.transportReturning(
            400, b'error:Bad request\nerror_code:unsupported-type\n')
        try:
            self.send(transport)
        except ServerError as why:
            self.assertEqual('Bad request', why.error_text)
            self.assertEqual('unsupported-type', why.error_code)
            self.assertEqual('Bad request', str(why))
        else:
            self.fail('ServerError not raised')

    def test_server_error_garbage_body(self):
        transport = support.transportReturning(400, b'<html>oops</html>')
        try:
            self.send(transport)
        except ServerError as why:
            self.assertEqual('<no error message supplied>', why.error_text)
            self.assertIsNone(why.error_code)
        else:
            self.fail('ServerError not raised')

    def test_other_status(self):
        for status in [302, 404, 500]:
            transport = support.transportReturning(status, b'')
            self.assertRaises(CommunicationFailure, self.send, transport)

    def test_error_with_200(self):
        transport = support.transportReturning(200, b'error:nope\n')
        self.assertRaises(ServerError, self.send, transport)

    def test_unexpected_kind(self):
        transport = support.transportReturning(200, b'is_valid:true\n')
        self.assertRaises(UnexpectedMessage, self.send, transport)

    def test_unparseable(self):
        transport = support.transportReturning(200, b'x:\xff\n')
        self.assertRaises(MalformedMessage, self.send, transport)

    def test_advances_handshake(self):
        transport = support.transportReturning(None, error='down')
        self.channel.transport = transport
        handshake = Handshake()
        self.assertRaises(CommunicationFailure, self.channel.send,
                          self.associateRequest(), SERVER_URL, None, handshake)
        self.assertEqual(ASSOCIATE, handshake.phase)

    def test_associate_after_checkid(self):
        self.channel.transport = support.transportReturning(200, b'')
        self.assertRaises(OutOfSequence, self.channel.send,
                          self.associateRequest(), SERVER_URL, None,
                          Handshake(CHECKID))
        self.assertEqual([], self.channel.transport.calls)


class RedirectTest(ChannelTestBase):
    def message(self, ns, size):
        msg = Message(ns)
        msg.setArg(OPENID_NS, 'mode', 'checkid_setup')
        msg.setArg(OPENID_NS, 'return_to', 'http://rp.example.com/?x=' + 'a' * size)
        return msg

    def test_short_redirect(self):
        indirect = self.channel.redirect(self.message(OPENID2_NS, 10), SERVER_URL)
        self.assertFalse(indirect.use_post)
        self.assertTrue(indirect.redirectURL().startswith(SERVER_URL + '?'))

    def test_long_openid2_is_posted(self):
        indirect = self.channel.redirect(self.message(OPENID2_NS, 3000), SERVER_URL)
        self.assertTrue(indirect.use_post)
        html = indirect.htmlMarkup()
        self.assertIn('<form', html)
        self.assertIn('document.forms[0].submit()', html)
        self.assertIn('action="%s"' % SERVER_URL, html)

    def test_limit_is_configurable(self):
        self.settings.max_redirect_url = 100
        indirect = self.channel.redirect(self.message(OPENID2_NS, 100), SERVER_URL)
        self.assertTrue(indirect.use_post)

    def test_openid1_always_redirects(self):
        indirect = self.channel.redirect(self.message(OPENID1_NS, 3000), SERVER_URL)
        self.assertFalse(indirect.use_post)

    def test_fields(self):
        indirect = self.channel.redirect(self.message(OPENID2_NS, 1), SERVER_URL)
        self.assertEqual('checkid_setup', indirect.fields['openid.mode'])
        self.assertEqual(OPENID2_NS, indirect.fields['openid.ns'])


class DecodeTest(ChannelTestBase):
    def test_openid1_aliases(self):
        msg = self.channel.decode({'openid.mode': 'cancel',
                                   'openid.sreg.nickname': 'bob'})
        self.assertEqual('bob', msg.getArg(protocol.SREG_URI, 'nickname'))

    def test_require_openid2(self):
        self.settings.require_openid2 = True
        self.assertRaises(UnsupportedVersion, self.channel.decode,
                          {'openid.mode': 'cancel'})
        self.channel.decode({'openid.ns': OPENID2_NS, 'openid.mode': 'cancel'})

    def test_sequence(self):
        handshake = Handshake(CHECKID)
        msg = self.channel.decode({'openid.mode': 'cancel'})
        self.channel.sequence(msg, handshake)
        self.assertEqual(ASSERTION, handshake.phase)
        try:
            self.channel.sequence(msg, handshake)
        except OutOfSequence as why:
            self.assertIs(msg, why.message)
        else:
            self.fail('OutOfSequence not raised')


class ReadTest(support.CatchLogs, ChannelTestBase):
    def setUp(self):
        support.CatchLogs.setUp(self)
        ChannelTestBase.setUp(self)
        self.assoc = Association.fromExpiresIn(
            600, '{HMAC-SHA1}{handle}', b'\x05' * 20, 'HMAC-SHA1')
        self.store.storeAssociation(SERVER_URL, self.assoc)

    def assertion(self, response_nonce=None, openid1=False):
        if openid1:
            msg = Message(OPENID1_NS)
            msg.setArg(BARE_NS, channel_module.NONCE_ARG,
                       response_nonce or nonce.mkNonce())
        else:
            msg = Message(OPENID2_NS)
            msg.setArg(OPENID_NS, 'op_endpoint', SERVER_URL)
            msg.setArg(OPENID_NS, 'claimed_id', 'http://user.example.com/')
            msg.setArg(OPENID_NS, 'response_nonce',
                       response_nonce or nonce.mkNonce())
        msg.updateArgs(OPENID_NS, {
            'mode': 'id_res',
            'identity': 'http://user.example.com/',
            'return_to': 'http://rp.example.com/return',
        })
        return self.assoc.signMessage(msg)

    def test_verified(self):
        msg = self.assertion()
        self.assertIs(msg, self.channel.read(msg))

    def test_post_args(self):
        msg = self.assertion()
        received = self.channel.read(msg.toPostArgs(), protocol.POSITIVE_ASSERTION)
        self.assertEqual(msg.getArg(OPENID_NS, 'sig'),
                         received.getArg(OPENID_NS, 'sig'))
        self.assertEqual(protocol.POSITIVE_ASSERTION, received.kind())

    def test_negative_assertion_not_verified(self):
        msg = Message.fromPostArgs({'openid.mode': 'cancel'})
        self.channel.read(msg)

    def test_tampered(self):
        msg = self.assertion()
        msg.setArg(OPENID_NS, 'identity', 'http://user.example.com/x')
        self.assertRaises(InvalidSignature, self.channel.read, msg)

    def test_replay(self):
        msg = self.assertion()
        self.channel.read(msg)
        try:
            self.channel.read(msg)
        except ReplayedNonce as why:
            self.assertIs(msg, why.message)
        else:
            self.fail('ReplayedNonce not raised')

    def test_expired_nonce(self):
        msg = self.assertion(nonce.mkNonce(time.time() - nonce.SKEW - 60))
        self.assertRaises(ExpiredNonce, self.channel.read, msg)

    def test_malformed_nonce(self):
        msg = self.assertion('yesterday-ish')
        self.assertRaises(MalformedMessage, self.channel.read, msg)

    def test_openid1_nonce_in_return_to_args(self):
        msg = self.assertion(openid1=True)
        self.channel.read(msg, server_url=SERVER_URL)
        self.assertRaises(ReplayedNonce, self.channel.read, msg,
                          server_url=SERVER_URL)

    def test_openid1_without_nonce(self):
        msg = self.assertion(openid1=True)
        msg.delArg(BARE_NS, channel_module.NONCE_ARG)
        self.assertRaises(MalformedMessage, self.channel.read, msg,
                          server_url=SERVER_URL)

    def test_openid1_needs_server_url(self):
        msg = self.assertion(openid1=True)
        self.assertRaises(MalformedMessage, self.channel.read, msg)

    def test_unknown_association_without_fallback(self):
        self.settings.stateless_fallback = False
        self.store.removeAssociation(SERVER_URL, self.assoc.handle)
        self.assertRaises(AssociationNotFound, self.channel.read,
                          self.assertion())

    def test_missing_assoc_handle(self):
        msg = self.assertion()
        msg.delArg(OPENID_NS, 'assoc_handle')
        self.assertRaises(MalformedMessage, self.channel.verify, msg, SERVER_URL)

    def test_out_of_sequence(self):
        self.assertRaises(OutOfSequence, self.channel.read,
                          self.assertion(), None, None, Handshake())


class CheckAuthTest(support.CatchLogs, ChannelTestBase):
    """Verification of assertions signed with an association the
    Relying Party doesn't know."""

    def setUp(self):
        support.CatchLogs.setUp(self)
        ChannelTestBase.setUp(self)
        assoc = Association.fromExpiresIn(
            600, '{HMAC-SHA1}{dumb}', b'\x07' * 20, 'HMAC-SHA1')
        msg = Message(OPENID2_NS)
        msg.updateArgs(OPENID_NS, {
            'mode': 'id_res',
            'identity': 'http://user.example.com/',
            'claimed_id': 'http://user.example.com/',
            'return_to': 'http://rp.example.com/return',
            'op_endpoint': SERVER_URL,
            'response_nonce': nonce.mkNonce(),
        })
        self.msg = assoc.signMessage(msg)

    def test_valid(self):
        transport = support.transportReturning(200, b'is_valid:true\n')
        self.channel.transport = transport
        self.channel.read(self.msg)
        url, body, headers = transport.calls[0]
        self.assertIn('openid.mode=check_authentication', body)
        self.assertIn('openid.sig=', body)

    def test_invalid(self):
        self.channel.transport = support.transportReturning(
            200, b'is_valid:false\n')
        self.assertRaises(InvalidSignature, self.channel.read, self.msg)

    def test_invalidate_handle(self):
        stale = Association.fromExpiresIn(
            600, 'stale', b'\x09' * 20, 'HMAC-SHA1')
        self.store.storeAssociation(SERVER_URL, stale)
        self.channel.transport = support.transportReturning(
            200, b'is_valid:true\ninvalidate_handle:stale\n')
        self.channel.read(self.msg)
        self.assertIsNone(self.store.getAssociation(SERVER_URL, 'stale'))
        self.failUnlessLogged('Received "invalidate_handle"')

    def test_provider_error(self):
        self.channel.transport = support.transportReturning(
            400, b'error:who are you\n')
        self.assertRaises(InvalidSignature, self.channel.read, self.msg)
        self.failUnlessLogged('check_authentication with')

    def test_network_failure(self):
        self.channel.transport = support.transportReturning(None, error='down')
        self.assertRaises(CommunicationFailure, self.channel.read, self.msg)

    def test_missing_signed_field(self):
        msg = self.msg.copy()
        msg.setArg(OPENID_NS, 'signed', msg.getArg(OPENID_NS, 'signed') + ',pape.x')
        self.channel.transport = support.transportReturning(200, b'is_valid:true\n')
        self.assertRaises(InvalidSignature, self.channel.read, msg)
        self.assertEqual([], self.channel.transport.calls)


class PrepareTest(ChannelTestBase):
    class Signatory(object):
        nonce_key = 'http://localhost/|nonce'

        def __init__(self):
            self.assoc = Association.fromExpiresIn(
                600, 'h', b'\x01' * 20, 'HMAC-SHA1')
            self.calls = []

        def sign(self, message, assoc_handle=None):
            self.calls.append(assoc_handle)
            return self.assoc.signMessage(message)

    def test_openid2_assertion_gets_nonce(self):
        signatory = self.Signatory()
        msg = Message(OPENID2_NS)
        msg.updateArgs(OPENID_NS, {'mode': 'id_res', 'identity': 'x'})
        prepared = self.channel.prepare(msg, signatory, 'h')
        nonce_string = prepared.getArg(OPENID_NS, 'response_nonce')
        self.assertTrue(nonce.checkTimestamp(nonce_string))
        self.assertIn('response_nonce',
                      prepared.getArg(OPENID_NS, 'signed').split(','))
        self.assertEqual(['h'], signatory.calls)
        self.assertFalse(msg.hasKey(OPENID_NS, 'response_nonce'))

        # The nonce is recorded so that it's never handed out again
        timestamp, salt = nonce.split(nonce_string)
        self.assertRaises(ReplayedNonce, self.store.useNonce,
                          signatory.nonce_key, timestamp, salt)

    def test_openid1_assertion_has_no_nonce(self):
        msg = Message(OPENID1_NS)
        msg.updateArgs(OPENID_NS, {'mode': 'id_res', 'identity': 'x'})
        prepared = self.channel.prepare(msg, self.Signatory())
        self.assertFalse(prepared.hasKey(OPENID_NS, 'response_nonce'))
        self.assertTrue(prepared.hasKey(OPENID_NS, 'sig'))

    def test_negative_assertion_untouched(self):
        signatory = self.Signatory()
        msg = Message(OPENID2_NS)
        msg.setArg(OPENID_NS, 'mode', 'cancel')
        self.assertIs(msg, self.channel.prepare(msg, signatory))
        self.assertEqual([], signatory.calls)


class PlaintextPolicyTest(unittest.TestCase):
    def test_disabled_by_default(self):
        channel = Channel(MemoryStore())
        self.assertFalse(channel.allowsPlaintext('https://op.example.com/'))

    def test_requires_https(self):
        channel = Channel(MemoryStore(), Settings(allow_no_encryption=True))
        self.assertTrue(channel.allowsPlaintext('https://op.example.com/'))
        self.assertTrue(channel.allowsPlaintext('HTTPS://op.example.com/'))
        self.assertFalse(channel.allowsPlaintext('http://op.example.com/'))
        self.assertFalse(channel.allowsPlaintext(None))


if __name__ == '__main__':
    unittest.main()
