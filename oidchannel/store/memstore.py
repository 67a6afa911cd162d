"""A simple store using only in-process memory."""
import copy
import threading
import time

from oidchannel.errors import ExpiredNonce, ReplayedNonce
from oidchannel.store import nonce
from oidchannel.store.interface import OpenIDStore


class ServerAssocs(object):
    def __init__(self):
        self.assocs = {}

    def set(self, assoc):
        self.assocs[assoc.handle] = assoc

    def get(self, handle):
        return self.assocs.get(handle)

    def remove(self, handle):
        try:
            del self.assocs[handle]
        except KeyError:
            return False
        else:
            return True

    def best(self):
        """Returns the most recently issued association, or None if
        there are no associations.
        """
        best = None
        for assoc in self.assocs.values():
            if best is None or best.issued < assoc.issued:
                best = assoc
        return best

    def cleanup(self, now=None):
        """Remove expired associations.

        @return: tuple of (removed associations, remaining associations)
        """
        remove = []
        for handle, assoc in self.assocs.items():
            if assoc.getExpiresIn(now) == 0:
                remove.append(handle)
        for handle in remove:
            del self.assocs[handle]
        return len(remove), len(self.assocs)


class MemoryStore(OpenIDStore):
    """In-process memory store.

    Use for single long-running processes.  No persistence supplied.
    Every method holds one re-entrant lock, so handshakes running on
    several threads may share an instance.
    """
    def __init__(self):
        self.server_assocs = {}
        self.nonces = {}
        self.lock = threading.RLock()

    def _getServerAssocs(self, server_url):
        try:
            return self.server_assocs[server_url]
        except KeyError:
            assocs = self.server_assocs[server_url] = ServerAssocs()
            return assocs

    def storeAssociation(self, server_url, assoc):
        with self.lock:
            assocs = self._getServerAssocs(server_url)
            assocs.set(copy.deepcopy(assoc))

    def getAssociation(self, server_url, handle=None):
        with self.lock:
            assocs = self._getServerAssocs(server_url)
            if handle is None:
                assoc = assocs.best()
            else:
                assoc = assocs.get(handle)

            if assoc is None or assoc.expiresIn <= 0:
                return None
            return copy.deepcopy(assoc)

    def removeAssociation(self, server_url, handle):
        with self.lock:
            assocs = self._getServerAssocs(server_url)
            return assocs.remove(handle)

    def useNonce(self, server_url, timestamp, salt, now=None):
        if now is None:
            now = time.time()
        if abs(timestamp - now) > nonce.SKEW:
            raise ExpiredNonce(
                'Nonce timestamp %d is outside of the allowed window'
                % (timestamp,))

        anonce = (str(server_url), int(timestamp), str(salt))
        with self.lock:
            if anonce in self.nonces:
                raise ReplayedNonce('Nonce already used')
            self.nonces[anonce] = timestamp

    def cleanupNonces(self, now=None):
        if now is None:
            now = time.time()
        with self.lock:
            expired = [
                anonce for anonce, timestamp in self.nonces.items()
                if abs(timestamp - now) > nonce.SKEW
            ]
            for anonce in expired:
                del self.nonces[anonce]
            return len(expired)

    def cleanupAssociations(self, now=None):
        with self.lock:
            remove_urls = []
            removed_assocs = 0
            for server_url, assocs in self.server_assocs.items():
                removed, remaining = assocs.cleanup(now)
                removed_assocs += removed
                if not remaining:
                    remove_urls.append(server_url)

            # Remove entries from server_assocs that had none remaining.
            for server_url in remove_urls:
                del self.server_assocs[server_url]
            return removed_assocs
