#!/usr/bin/env python3
from nostr.event import Event, EventKind
import threading
from botrelays import RelayPool
from boterrors import NoRelayAccepted, RelayClosedError

KIND_REACTION = 7

def makeReaction(eventId, authorId, publicKey, content="+", emojiName=None, emojiUrl=None):
    # content is used as configured; a custom emoji expects it to read ":emojiName:"
    reactTags = []
    reactTags.append(["e", eventId])
    reactTags.append(["p", authorId])
    reactTags.append(["k", str(int(EventKind.TEXT_NOTE))])
    if emojiName and emojiUrl:
        reactTags.append(["emoji", emojiName, emojiUrl])
    return Event(public_key=publicKey, content=content, kind=KIND_REACTION, tags=reactTags)

class ReactionPublisher:

    def __init__(self, ctx, signer, relays, poolFactory=RelayPool):
        self.ctx = ctx
        self.logger = ctx.logger
        reactionConfig = ctx.config.get("reaction", {})
        self.enabled = bool(reactionConfig.get("enabled", False))
        self.content = reactionConfig.get("content") or "+"
        self.emojiName = reactionConfig.get("emojiName")
        self.emojiUrl = reactionConfig.get("emojiUrl")
        self.signer = signer
        self.relays = list(relays)
        self.poolFactory = poolFactory
        self._pools = {}
        self._poolsLock = threading.Lock()

    def _poolFor(self, url):
        with self._poolsLock:
            pool = self._pools.get(url)
            if pool is None:
                pool = self.poolFactory(self.ctx, [url]).connect()
                self._pools[url] = pool
        return pool

    def _publishTo(self, url, event):
        pool = self._poolFor(url)
        try:
            pool.publish(event)
        except RelayClosedError:
            self.logger.debug(f"Relay {url} closed, reconnecting before publishing reaction")
            pool.reconnect()
            pool.publish(event)

    def react(self, eventId, authorId, deadline):
        """Sign and publish a reaction, returning how many relays took it.

        Returns 0 without doing anything when reactions are disabled.
        """
        if not self.enabled: return 0
        publicKey = self.signer.getPublicKey(deadline)
        reaction = makeReaction(eventId, authorId, publicKey, self.content, self.emojiName, self.emojiUrl)
        signed = self.signer.signEvent(reaction, deadline)
        accepted = 0
        for url in self.relays:
            deadline.check()
            try:
                self._publishTo(url, signed)
                accepted += 1
            except (RelayClosedError, OSError) as err:
                self.logger.warning(f"Failed to publish reaction to {url}: {str(err)}")
        if accepted == 0:
            raise NoRelayAccepted()
        self.logger.debug(f"Reaction to {eventId} published to {accepted} of {len(self.relays)} relays")
        return accepted

    def close(self):
        with self._poolsLock:
            pools = list(self._pools.values())
            self._pools = {}
        for pool in pools:
            pool.close()
