"""This module contains general utility code that is used throughout
the library: base64 helpers, URL argument handling and HTML rendering.
"""
import base64
import binascii
import urllib.parse
import xml.etree.ElementTree as ElementTree

import html5lib

__all__ = [
    'appendArgs',
    'autoSubmitHTML',
    'fromBase64',
    'toBase64',
]

AUTO_SUBMIT_SCRIPT = (
    "var elements = document.forms[0].elements;"
    "for (var i = 0; i < elements.length; i++) {"
    "  elements[i].style.display = 'none';"
    "}"
    "document.forms[0].submit();"
)

# Browsers with scripting disabled fall back to the visible submit button.
AUTO_SUBMIT_TITLE = 'OpenID transaction in progress'


def serializeElement(element, **options):
    """Render an ElementTree element as an HTML string with html5lib."""
    options.setdefault('omit_optional_tags', False)
    options.setdefault('quote_attr_values', 'always')
    return html5lib.serialize(element, tree='etree', **options)


def autoSubmitHTML(form, title=AUTO_SUBMIT_TITLE):
    """Wrap a form element in an HTML page which submits it as soon as
    the page is loaded.

    @param form: the form to submit
    @type form: xml.etree.ElementTree.Element

    @rtype: str
    """
    html = ElementTree.Element('html')
    head = ElementTree.SubElement(html, 'head')
    ElementTree.SubElement(head, 'title').text = title
    body = ElementTree.SubElement(html, 'body', {'onload': AUTO_SUBMIT_SCRIPT})
    body.append(form)
    return '<!DOCTYPE html>\n' + serializeElement(html)


def appendArgs(url, args):
    """Append query arguments to a HTTP(s) URL. If the URL already has
    query arguemtns, these arguments will be added, and the existing
    arguments will be preserved. Duplicate arguments will not be
    detected or collapsed (both will appear in the output).

    @param url: The url to which the arguments will be appended
    @type url: str

    @param args: The query arguments to add to the URL. If a
        dictionary is passed, the items will be sorted before
        appending them to the URL. If a sequence of pairs is passed,
        the order of the sequence will be preserved.
    @type args: A dictionary from string to string, or a sequence of
        pairs of strings.

    @returns: The URL with the parameters added
    @rtype: str
    """
    if hasattr(args, 'items'):
        args = sorted(args.items())
    else:
        args = list(args)

    if not args:
        return url

    if '?' in url:
        sep = '&'
    else:
        sep = '?'

    return '%s%s%s' % (url, sep, urllib.parse.urlencode(args))


def toBase64(s):
    """Represent string / bytes s as base64, omitting newlines"""
    if isinstance(s, str):
        s = s.encode('utf-8')
    return base64.b64encode(s).decode('ascii')


def fromBase64(s):
    if isinstance(s, str):
        s = s.encode('ascii')
    try:
        return base64.b64decode(s, validate=True)
    except binascii.Error as why:
        # Convert to a common exception type
        raise ValueError(str(why))
