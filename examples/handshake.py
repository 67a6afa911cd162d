#!/usr/bin/env python
"""
A complete OpenID handshake between a Relying Party and a Provider
running in the same process.

Direct requests (associate, check_authentication) are handed to the
Provider through a transport function instead of the network; indirect
messages are carried the way a browser would follow the redirects.
Run it with -v to see what both halves log.
"""
import logging
import sys
import urllib.parse

from oidchannel import fetchers
from oidchannel.consumer import Consumer
from oidchannel.errors import ProtocolError
from oidchannel.extensions import sreg
from oidchannel.server import Server, HTTP_REDIRECT
from oidchannel.service import Service, OPENID_2_0_TYPE, OPENID_1_1_TYPE
from oidchannel.store.memstore import MemoryStore

OP_ENDPOINT = 'http://op.example.com/server'
CLAIMED_ID = 'http://user.example.com/'
REALM = 'http://rp.example.com/'
RETURN_TO = 'http://rp.example.com/process'

PROFILE = {
    'nickname': 'alice',
    'email': 'alice@example.com',
    'country': 'NZ',
}


def providerTransport(server):
    """A transport that answers direct requests with C{server}."""
    def transport(url, body=None, headers=None):
        query = dict(urllib.parse.parse_qsl(body.decode('utf-8')))
        try:
            request = server.decodeRequest(query)
            web_response = server.encodeResponse(server.handleRequest(request))
        except ProtocolError as why:
            web_response = server.encodeError(why)
        return fetchers.HTTPResponse(url, web_response.code,
                                     web_response.headers, web_response.body,
                                     None)
    return transport


def provide(server, fields, allow, send_sreg):
    """What the Provider's checkid page does."""
    request = server.decodeRequest(fields)
    print('Provider got:', request)
    response = request.answer(allow)
    if allow and send_sreg:
        sreg_request = sreg.SRegRequest.fromOpenIDRequest(request)
        response.addExtension(
            sreg.SRegResponse.extractResponse(sreg_request, PROFILE))

    web_response = server.encodeResponse(response)
    if web_response.code != HTTP_REDIRECT:
        sys.exit('Expected a redirect, got HTTP %s' % (web_response.code,))
    location = web_response.headers['location']
    return dict(urllib.parse.parse_qsl(urllib.parse.urlparse(location).query))


def main(openid1, stateless, sha256, use_sreg, cancel):
    server = Server(MemoryStore(), OP_ENDPOINT)

    session = {}
    oidconsumer = Consumer(session, MemoryStore(),
                           transport=providerTransport(server))
    if stateless:
        oidconsumer.setAssociationPreference([])
    elif sha256:
        oidconsumer.setAssociationPreference([('HMAC-SHA256', 'DH-SHA256')])

    service_type = OPENID_1_1_TYPE if openid1 else OPENID_2_0_TYPE
    service = Service([service_type], OP_ENDPOINT, CLAIMED_ID)

    request = oidconsumer.beginWithoutDiscovery(service)
    print('Relying Party is', oidconsumer.state)
    if use_sreg:
        request.addExtension(sreg.SRegRequest(required=['nickname'],
                                              optional=['email']))

    indirect = request.redirect(REALM, RETURN_TO)
    print('Sending the user to', indirect.redirectURL())

    query = provide(server, indirect.fields, not cancel, use_sreg)
    print('Provider sent back:')
    for key, value in sorted(query.items()):
        print('    %s: %s' % (key, value))

    try:
        response = oidconsumer.complete(query, RETURN_TO)
    except ProtocolError as why:
        print('Verification failed:', why)
        return 1

    print('Relying Party is', oidconsumer.state)
    if response.identity():
        print('Authenticated as', response.identity())
    sreg_response = sreg.SRegResponse.fromSuccessResponse(response)
    if sreg_response:
        print('Simple registration data:', dict(sreg_response.items()))
    return 0


if __name__ == '__main__':
    import optparse

    parser = optparse.OptionParser('Usage:\n %prog [options]')
    parser.add_option(
        '-1', '--openid1', dest='openid1', default=False,
        action='store_true', help='Talk OpenID 1.1 instead of 2.0')
    parser.add_option(
        '-s', '--stateless', dest='stateless', default=False,
        action='store_true',
        help='Do not associate, verify with check_authentication')
    parser.add_option(
        '--sha256', dest='sha256', default=False, action='store_true',
        help='Ask for an HMAC-SHA256 association')
    parser.add_option(
        '-r', '--sreg', dest='sreg', default=False, action='store_true',
        help='Request simple registration data')
    parser.add_option(
        '-c', '--cancel', dest='cancel', default=False, action='store_true',
        help='Have the user refuse the request')
    parser.add_option(
        '-v', '--verbose', dest='verbose', default=False,
        action='store_true', help='Show the library log')

    options, args = parser.parse_args()
    if args:
        parser.error('Expected no arguments. Got %r' % args)

    if options.verbose:
        logging.basicConfig(level=logging.INFO, format='%(levelname)s %(message)s')

    sys.exit(main(options.openid1, options.stateless, options.sha256,
                  options.sreg, options.cancel))
