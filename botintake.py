#!/usr/bin/env python3
from dataclasses import dataclass
from nostr.event import EventKind
from nostr.filter import Filter, Filters
import time
import botutils as utils
from botrelays import RelayPool
from boterrors import ConfigError, RelayClosedError

_retryPause = 5

@dataclass(frozen=True)
class IncomingPost:
    id: str
    authorId: str
    content: str
    createdAt: int
    relayOrigin: str
    kind: int = int(EventKind.TEXT_NOTE)

def resolveMonitoredIdentities(identities):
    resolved = []
    for identity in identities:
        pubkey = utils.normalizeToHex(identity)
        if pubkey is None:
            raise ConfigError(f"monitored identity is not a valid npub or hex pubkey: {identity}")
        if pubkey not in resolved: resolved.append(pubkey)
    if len(resolved) == 0:
        raise ConfigError("no monitored identities to follow")
    return resolved

class EventIntake:
    """Streams new text notes from the monitored authors.

    The subscription is reopened every relayReconnectMinutes, resuming from
    the newest created_at seen so far. Posts with a bad signature are dropped.
    """

    def __init__(self, ctx, relays, authors, poolFactory=RelayPool, clock=time.time):
        self.ctx = ctx
        self.logger = ctx.logger
        self.relays = list(relays)
        self.authors = list(authors)
        self._authorSet = set(self.authors)
        self.poolFactory = poolFactory
        self.refreshSeconds = max(1, int(ctx.config.get("relayReconnectMinutes", 30))) * 60
        self.since = int(clock())

    def buildFilter(self, since):
        return Filters([Filter(kinds=[EventKind.TEXT_NOTE], authors=self.authors, since=since)])

    def toPost(self, event, url):
        if event.public_key not in self._authorSet: return None
        if not event.verify():
            self.logger.warning(f"Dropping event {event.id} from {url} with invalid signature")
            return None
        return IncomingPost(event.id, event.public_key, event.content, event.created_at, url, int(event.kind))

    def posts(self):
        self.logger.info(f"Monitoring {len(self.authors)} authors on {len(self.relays)} relays")
        while not self.ctx.shutdown.is_set():
            pool = None
            try:
                pool = self.poolFactory(self.ctx, self.relays).connect()
                refreshDeadline = self.ctx.deadline(self.refreshSeconds)
                for event, url in pool.stream(self.buildFilter(self.since), prefix="intake", deadline=refreshDeadline):
                    post = self.toPost(event, url)
                    if post is None: continue
                    if post.createdAt > self.since: self.since = post.createdAt
                    yield post
            except RelayClosedError as err:
                self.logger.warning(f"Intake relay connection lost: {str(err)}")
                self.ctx.shutdown.wait(_retryPause)
            finally:
                if pool is not None: pool.close()
            if not self.ctx.shutdown.is_set():
                self.logger.debug(f"Refreshing intake subscription since {self.since}")
