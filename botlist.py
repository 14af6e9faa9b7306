#!/usr/bin/env python3
from dataclasses import dataclass
from nostr.filter import Filter
import json
import botutils as utils
from botrelays import RelayPool
from boterrors import ConfigError, SessionError, SignerRejected

KIND_PEOPLE_LIST = 30000

_fetchTimeout = 10

@dataclass
class CuratedList:
    id: str
    title: str
    npubs: list
    eventId: str
    createdAt: int
    hasPrivate: bool

def getTagValue(tags, name):
    for tag in tags:
        if len(tag) >= 2 and tag[0] == name and tag[1]: return tag[1]
    return None

def getPubkeysFromTags(tags):
    pubkeys = []
    for tag in tags:
        if not isinstance(tag, list) or len(tag) < 2 or tag[0] != "p": continue
        pubkey = utils.normalizeToHex(tag[1])
        if pubkey is not None and pubkey not in pubkeys: pubkeys.append(pubkey)
    return pubkeys

def decryptPrivateEntries(signer, event, deadline):
    # current clients encrypt list entries with nip44, older ones with nip04
    try:
        return signer.nip44Decrypt(event.public_key, event.content, deadline)
    except SignerRejected:
        return signer.nip04Decrypt(event.public_key, event.content, deadline)

def getPrivatePubkeys(ctx, event, signer, deadline):
    if len(event.content or "") == 0: return []
    try:
        plaintext = decryptPrivateEntries(signer, event, deadline)
    except (SignerRejected, SessionError) as err:
        ctx.logger.warning(f"Could not decrypt private entries of list {event.id}: {str(err)}")
        return []
    try:
        privateTags = json.loads(plaintext)
    except (ValueError, TypeError):
        ctx.logger.warning(f"Private entries of list {event.id} are not a json tag array")
        return []
    if not isinstance(privateTags, list): return []
    return getPubkeysFromTags(privateTags)

def fetchLists(ctx, relays, authorPubkey, signer, poolFactory=RelayPool):
    deadline = ctx.deadline(_fetchTimeout)
    pool = poolFactory(ctx, relays).connect()
    try:
        events = pool.fetch([Filter(kinds=[KIND_PEOPLE_LIST], authors=[authorPubkey])], deadline, prefix="lists")
    finally:
        pool.close()
    # a replaceable list may come back in several versions; keep the newest per d tag
    newest = {}
    for event in events:
        if event.public_key != authorPubkey or not event.verify(): continue
        listId = getTagValue(event.tags, "d")
        if listId is None: continue
        if listId in newest and newest[listId].created_at >= event.created_at: continue
        newest[listId] = event
    lists = []
    for listId, event in newest.items():
        title = getTagValue(event.tags, "name") or getTagValue(event.tags, "title") or listId
        pubkeys = getPubkeysFromTags(event.tags)
        privatePubkeys = getPrivatePubkeys(ctx, event, signer, ctx.deadline(_fetchTimeout))
        for pubkey in privatePubkeys:
            if pubkey not in pubkeys: pubkeys.append(pubkey)
        npubs = [utils.hexToBech32(p, "npub") for p in pubkeys]
        lists.append(CuratedList(listId, title, npubs, event.id, event.created_at, len(privatePubkeys) > 0))
    ctx.logger.debug(f"Found {len(lists)} curated lists")
    return lists

def getMonitoredNpubs(ctx, relays, authorPubkey, signer, listId, poolFactory=RelayPool):
    for curatedList in fetchLists(ctx, relays, authorPubkey, signer, poolFactory):
        if curatedList.id == listId:
            ctx.logger.info(f"Using list '{curatedList.title}' with {len(curatedList.npubs)} members")
            return curatedList.npubs
    raise ConfigError(f"list '{listId}' not found")
