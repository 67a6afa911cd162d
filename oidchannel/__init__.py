#-*-coding: utf-8-*-
"""
This is an implementation of the OpenID authentication protocol message
channel in Python.  It contains both the Relying Party and the Provider
halves of the handshake.

See the :ref:`oidchannel.consumer` module for the Relying Party side,
the :ref:`oidchannel.server` module for the Provider side and
:ref:`oidchannel.channel` for the transport-independent machinery they
share: signing, verification, replay protection and message routing.

.. code-block:: none

    Licensed under the Apache License, Version 2.0 (the "License");
    you may not use this file except in compliance with the License.
    You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0

    Unless required by applicable law or agreed to in writing, software
    distributed under the License is distributed on an "AS IS" BASIS,
    WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
    See the License for the specific language governing permissions
    and limitations under the License.
"""

version_info = (0, 1, 0)

__version__ = ".".join(str(x) for x in version_info)

__all__ = [
    'association',
    'channel',
    'consumer',
    'cryptutil',
    'dh',
    'errors',
    'extension',
    'extensions',
    'fetchers',
    'kvform',
    'message',
    'oidutil',
    'realm',
    'server',
    'service',
    'settings',
    'store',
    'urinorm',
]
