import copy
import pickle
import unittest
import urllib.parse

from oidchannel import message
from oidchannel.errors import MalformedMessage, UnsupportedVersion, \
     UnexpectedMessage, ConflictingExtension
from oidchannel.message import Message, OPENID_NS, OPENID1_NS, OPENID2_NS, \
     BARE_NS, SREG_URI, no_default
from oidchannel.test.support import OpenIDTestMixin, gentests


def assertion(**extra):
    args = {
        'openid.ns': OPENID2_NS,
        'openid.mode': 'id_res',
        'openid.return_to': 'http://rp.example.com/return',
        'openid.op_endpoint': 'http://op.example.com/server',
        'openid.response_nonce': '2026-10-19T00:00:00Zabc',
        'openid.assoc_handle': 'handle',
        'openid.signed': 'mode',
        'openid.sig': 'c2ln',
        'openid.claimed_id': 'http://user.example.com/',
        'openid.identity': 'http://user.example.com/',
    }
    args.update(extra)
    return args


class EmptyMessageTest(unittest.TestCase):
    def setUp(self):
        self.msg = Message()

    def test_namespace_undefined(self):
        self.assertEqual(None, self.msg.getOpenIDNamespace())
        self.assertRaises(message.UndefinedOpenIDNamespace,
                          self.msg.getArg, OPENID_NS, 'mode')

    def test_bare_args(self):
        self.assertEqual({}, self.msg.toPostArgs())
        self.assertEqual('x', self.msg.getArg(BARE_NS, 'foo', 'x'))

    def test_no_default(self):
        self.assertRaises(KeyError, self.msg.getArg, BARE_NS, 'foo', no_default)

    def test_bad_namespace_type(self):
        self.assertRaises(TypeError, self.msg.getArg, 42, 'foo')


class OpenID1MessageTest(OpenIDTestMixin, unittest.TestCase):
    def setUp(self):
        self.msg = Message.fromPostArgs({
            'openid.mode': 'error',
            'openid.error': 'unit test',
            'xey': 'value',
        })

    def test_version(self):
        self.assertTrue(self.msg.isOpenID1())
        self.assertFalse(self.msg.isOpenID2())
        self.assertEqual(OPENID1_NS, self.msg.getOpenIDNamespace())

    def test_namespace_is_implicit(self):
        self.assertEqual({
            'openid.mode': 'error',
            'openid.error': 'unit test',
            'xey': 'value',
        }, self.msg.toPostArgs())

    def test_bare(self):
        self.assertEqual('value', self.msg.getArg(BARE_NS, 'xey'))

    def test_kvform_refuses_bare_args(self):
        self.assertRaises(ValueError, self.msg.toKVForm)

    def test_kind(self):
        self.assertEqual(message.ERROR, self.msg.kind())

    def test_copy_keeps_post_args(self):
        self.assertEqual(self.msg.toPostArgs(), self.msg.copy().toPostArgs())
        self.assertEqual('openid.mode',
                         self.msg.copy().getKey(OPENID_NS, 'mode'))

    def test_undeclared_alias_stays_in_protocol_namespace(self):
        msg = Message.fromPostArgs({'openid.sreg.nickname': 'bob'})
        self.failUnlessOpenIDValueEquals(msg, 'sreg.nickname', 'bob')

    def test_implicit_alias(self):
        msg = Message.fromPostArgs({'openid.sreg.nickname': 'bob'},
                                   {'sreg': SREG_URI})
        self.assertEqual('bob', msg.getArg(SREG_URI, 'nickname'))
        # Implicit aliases are not written back out
        self.assertEqual({'openid.sreg.nickname': 'bob'}, msg.toPostArgs())

    def test_implicit_alias_ignored_in_openid2(self):
        msg = Message.fromPostArgs({'openid.ns': OPENID2_NS,
                                    'openid.sreg.nickname': 'bob'},
                                   {'sreg': SREG_URI})
        self.assertEqual(None, msg.getArg(SREG_URI, 'nickname'))


class OpenID2MessageTest(OpenIDTestMixin, unittest.TestCase):
    def setUp(self):
        self.msg = Message.fromPostArgs({
            'openid.ns': OPENID2_NS,
            'openid.mode': 'checkid_setup',
            'openid.ns.pape': 'http://specs.openid.net/extensions/pape/1.0',
            'openid.pape.max_auth_age': '0',
            'openid.identity': 'http://user.example.com/',
        })

    def test_version(self):
        self.assertTrue(self.msg.isOpenID2())

    def test_extension(self):
        self.assertEqual(
            {'max_auth_age': '0'},
            self.msg.getArgs('http://specs.openid.net/extensions/pape/1.0'))
        self.assertEqual(
            'openid.pape.max_auth_age',
            self.msg.getKey('http://specs.openid.net/extensions/pape/1.0',
                            'max_auth_age'))

    def test_aliased_arg(self):
        self.assertEqual('0', self.msg.getAliasedArg('pape.max_auth_age'))
        self.assertEqual(OPENID2_NS, self.msg.getAliasedArg('ns'))
        self.assertEqual('http://specs.openid.net/extensions/pape/1.0',
                         self.msg.getAliasedArg('ns.pape'))
        self.assertEqual(None, self.msg.getAliasedArg('ns.nope'))

    def test_namespace_declared_in_output(self):
        args = self.msg.toPostArgs()
        self.assertEqual(OPENID2_NS, args['openid.ns'])
        self.assertEqual('http://specs.openid.net/extensions/pape/1.0',
                         args['openid.ns.pape'])

    def test_set_adds_alias(self):
        self.msg.setArg('http://example.com/ext', 'foo', 'bar')
        self.assertEqual('bar', self.msg.getArg('http://example.com/ext', 'foo'))
        self.assertTrue(self.msg.namespaces.isDefined('http://example.com/ext'))

    def test_kvform(self):
        msg = Message(OPENID2_NS)
        msg.setArg(OPENID_NS, 'is_valid', 'true')
        self.assertEqual('is_valid:true\nns:%s\n' % (OPENID2_NS,),
                         msg.toKVForm())

    def test_url(self):
        url = self.msg.toURL('http://op.example.com/server?x=1')
        parts = urllib.parse.urlparse(url)
        query = dict(urllib.parse.parse_qsl(parts.query))
        self.assertEqual('1', query['x'])
        self.assertEqual('checkid_setup', query['openid.mode'])

    def test_copy_is_independent(self):
        copied = self.msg.copy()
        copied.setArg(OPENID_NS, 'mode', 'checkid_immediate')
        self.failUnlessOpenIDValueEquals(self.msg, 'mode', 'checkid_setup')
        self.assertNotEqual(copied, self.msg)

    def test_copy_keeps_post_args(self):
        self.assertEqual(self.msg.toPostArgs(), self.msg.copy().toPostArgs())
        self.assertEqual(self.msg, self.msg.copy())

    def test_namespace_markers_survive_copies(self):
        self.assertIs(BARE_NS, copy.deepcopy(BARE_NS))
        self.assertIs(message.NULL_NAMESPACE,
                      copy.copy(message.NULL_NAMESPACE))
        self.assertIs(OPENID_NS, pickle.loads(pickle.dumps(OPENID_NS)))

    def test_form_markup(self):
        markup = self.msg.toFormMarkup('http://op.example.com/server',
                                       {'id': 'openid_message'})
        self.assertIn('action="http://op.example.com/server"', markup)
        self.assertIn('id="openid_message"', markup)
        self.assertIn('name="openid.mode"', markup)
        self.assertIn('value="checkid_setup"', markup)

    def test_unknown_version(self):
        self.assertRaises(UnsupportedVersion, Message.fromPostArgs,
                          {'openid.ns': 'http://openid.net/signon/3.0'})

    def test_multiple_values(self):
        self.assertRaises(MalformedMessage, Message.fromPostArgs,
                          {'openid.mode': ['a', 'b']})

    def test_value_not_utf8(self):
        self.assertRaises(MalformedMessage, Message.fromPostArgs,
                          {'openid.mode': b'checkid_setup\xff'})

    def test_bytes_decoded(self):
        msg = Message.fromPostArgs({b'openid.mode': b'error'})
        self.failUnlessOpenIDValueEquals(msg, 'mode', 'error')

    def test_conflicting_alias(self):
        self.assertRaises(ConflictingExtension, self.msg.namespaces.addAlias,
                          'http://other/', 'pape')

    def test_reserved_alias(self):
        self.assertRaises(MalformedMessage, self.msg.namespaces.addAlias,
                          'http://other/', 'mode')
        self.assertRaises(MalformedMessage, self.msg.namespaces.addAlias,
                          'http://other/', 'a.b')


@gentests
class KindTest(unittest.TestCase):
    data = [
        ('associate', ({'openid.mode': 'associate'}, message.ASSOCIATE_REQUEST)),
        ('checkid', (
            {'openid.ns': OPENID2_NS, 'openid.mode': 'checkid_setup',
             'openid.identity': 'x'}, message.CHECKID_REQUEST)),
        ('checkid_openid1_without_identity', (
            {'openid.mode': 'checkid_immediate'}, message.CHECKID_REQUEST)),
        ('extension_request', (
            {'openid.ns': OPENID2_NS, 'openid.mode': 'checkid_setup'},
            message.EXTENSION_REQUEST)),
        ('positive', (assertion(), message.POSITIVE_ASSERTION)),
        ('extension_response', (
            {'openid.ns': OPENID2_NS, 'openid.mode': 'id_res'},
            message.EXTENSION_RESPONSE)),
        ('cancel', ({'openid.mode': 'cancel'}, message.NEGATIVE_ASSERTION)),
        ('setup_needed', (
            {'openid.ns': OPENID2_NS, 'openid.mode': 'setup_needed'},
            message.NEGATIVE_ASSERTION)),
        ('openid1_setup_url', (
            {'openid.mode': 'id_res', 'openid.user_setup_url': 'http://x/'},
            message.NEGATIVE_ASSERTION)),
        ('check_auth', (
            {'openid.mode': 'check_authentication'}, message.CHECK_AUTH_REQUEST)),
        ('error', ({'openid.mode': 'error'}, message.ERROR)),
        ('direct_error', ({'openid.error': 'x'}, message.ERROR)),
        ('direct_is_valid', ({'openid.is_valid': 'true'},
                             message.CHECK_AUTH_RESPONSE)),
        ('direct_association', ({'openid.assoc_handle': 'h'},
                                message.ASSOCIATE_RESPONSE)),
        ('unknown_mode', ({'openid.mode': 'frobnicate'}, None)),
    ]

    def _test(self, args, expected):
        self.assertEqual(expected, Message.fromPostArgs(args).kind())


class DecodeTest(unittest.TestCase):
    def test_expected_kind(self):
        msg = message.decode(assertion(), message.POSITIVE_ASSERTION)
        self.assertEqual(message.POSITIVE_ASSERTION, msg.kind())

    def test_unexpected_kind(self):
        self.assertRaises(UnexpectedMessage, message.decode,
                          assertion(), (message.ASSOCIATE_RESPONSE,))

    def test_unknown_mode(self):
        self.assertRaises(MalformedMessage, message.decode,
                          {'openid.mode': 'frobnicate'})

    def test_missing_openid2_fields(self):
        args = assertion()
        del args['openid.response_nonce']
        try:
            message.decode(args)
        except MalformedMessage as why:
            self.assertIn('response_nonce', str(why))
            self.assertEqual('id_res', why.message.getArg(OPENID_NS, 'mode'))
        else:
            self.fail('MalformedMessage not raised')

    def test_openid1_fields(self):
        args = assertion()
        for key in ['openid.ns', 'openid.op_endpoint',
                    'openid.response_nonce', 'openid.claimed_id']:
            del args[key]
        msg = message.decode(args)
        self.assertTrue(msg.isOpenID1())

    def test_checkid_needs_realm_or_return_to(self):
        args = {'openid.ns': OPENID2_NS, 'openid.mode': 'checkid_setup',
                'openid.identity': 'x', 'openid.claimed_id': 'x'}
        self.assertRaises(MalformedMessage, message.decode, args)
        args['openid.realm'] = 'http://rp.example.com/'
        self.assertEqual(message.CHECKID_REQUEST, message.decode(args).kind())

    def test_kvform(self):
        msg = message.decode(b'ns:%s\nis_valid:true\n' % OPENID2_NS.encode())
        self.assertEqual(message.CHECK_AUTH_RESPONSE, msg.kind())
        self.assertTrue(msg.isOpenID2())

    def test_message_passes_through(self):
        msg = Message.fromPostArgs(assertion())
        self.assertIs(msg, message.decode(msg))

    def test_encode(self):
        msg = Message.fromPostArgs({'openid.ns': OPENID2_NS,
                                    'openid.error': 'nope'})
        self.assertEqual(b'error:nope\nns:' + OPENID2_NS.encode() + b'\n',
                         message.encode(msg, True))
        self.assertEqual({'openid.ns': OPENID2_NS, 'openid.error': 'nope'},
                         message.encode(msg, False))


if __name__ == '__main__':
    unittest.main()
