import logging
import queue
import threading
from types import SimpleNamespace
import pytest
from nostr.event import Event
from nostr.key import PrivateKey
import botconfig as cfg
from boterrors import RelayClosedError, SignerRejected

def makeConfig(**overrides):
    config = {
        "author": {"npub": "npub1test", "bunkerUrl": "bunker://" + "ab" * 32 + "?relay=wss://relay.example"},
        "relays": ["wss://relay.one", "wss://relay.two"],
        "monitored": [],
        "nwcUrl": "",
        "zap": {"amount": 3, "comment": "nice note"},
        "reaction": {"enabled": True, "content": "+"},
        "budget": {"dailyLimit": 10000, "perNpubLimit": 10000},
    }
    for k, v in overrides.items():
        config[k] = v
    return cfg.applyDefaults(config)

@pytest.fixture
def ctx():
    return cfg.BotContext(makeConfig(), logging.getLogger("notezapper.test"))

def makeContext(**overrides):
    return cfg.BotContext(makeConfig(**overrides), logging.getLogger("notezapper.test"))

def signedEvent(key, content="", kind=1, tags=None, created_at=None):
    event = Event(content=content, public_key=key.public_key.hex(), created_at=created_at, kind=kind, tags=tags or [])
    key.sign_event(event)
    return event

class FakeSigner:
    def __init__(self, key=None, nip44Plaintexts=None):
        self.key = key or PrivateKey()
        self.nip44Plaintexts = dict(nip44Plaintexts or {})
        self.signed = []
        self.decrypted = []

    def getPublicKey(self, deadline):
        return self.key.public_key.hex()

    def signEvent(self, event, deadline):
        if event.public_key != self.key.public_key.hex():
            raise SignerRejected("event pubkey does not match the signer")
        signed = Event(content=event.content, public_key=event.public_key, created_at=event.created_at,
                       kind=event.kind, tags=event.tags)
        self.key.sign_event(signed)
        self.signed.append(signed)
        return signed

    def nip44Decrypt(self, senderPubkey, ciphertext, deadline):
        if ciphertext not in self.nip44Plaintexts:
            raise SignerRejected("failed to decrypt nip44 payload")
        self.decrypted.append(ciphertext)
        return self.nip44Plaintexts[ciphertext]

    def nip04Decrypt(self, senderPubkey, ciphertext, deadline):
        self.decrypted.append(ciphertext)
        return self.key.decrypt_message(ciphertext, senderPubkey)

class FakePool:
    """Stands in for RelayPool."""

    def __init__(self, ctx, urls, events=None, failPublish=0):
        self.ctx = ctx
        self.urls = list(urls)
        self.events = list(events or [])
        self.failPublish = failPublish
        self.published = []
        self.connected = False
        self.closed = False
        self.reconnects = 0
        self.fetches = 0
        self.subscriptions = {}

    def connect(self):
        self.connected = True
        return self

    def close(self):
        self.closed = True

    def reconnect(self):
        self.reconnects += 1

    def publish(self, event):
        if self.failPublish > 0:
            self.failPublish -= 1
            raise RelayClosedError("connection closed")
        self.published.append(event)

    def fetch(self, filterList, deadline, prefix="fetch"):
        self.fetches += 1
        return list(self.events)

    def subscribe(self, subid, filterList):
        q = queue.Queue()
        self.subscriptions[subid] = q
        return q

    def unsubscribe(self, subid):
        self.subscriptions.pop(subid, None)

    def stream(self, filterList, prefix="stream", deadline=None):
        for event in self.events:
            yield event, self.urls[0]
        self.ctx.shutdown.set()

def eventMessage(event, url="wss://relay.example"):
    return SimpleNamespace(event=event, url=url, subscription_id="sub")

class FakeWallet:
    def __init__(self, errors=None):
        self.invoices = []
        self.errors = list(errors or [])
        self.lock = threading.Lock()

    def payInvoice(self, invoice, deadline):
        with self.lock:
            self.invoices.append(invoice)
            if self.errors:
                raise self.errors.pop(0)
        return SimpleNamespace(preimage="00" * 32, feesPaidMillisats=0)

class FakeNegotiator:
    def __init__(self, endpoint="https://example.com/.well-known/lnurlp/alice"):
        self.endpoint = endpoint
        self.requests = []

    def resolvePaymentEndpoint(self, authorId, deadline):
        return self.endpoint

    def negotiateInvoice(self, endpoint, amountSats, zapRequest=None, comment=None, deadline=None):
        self.requests.append((endpoint, amountSats, zapRequest))
        return f"lnbc{amountSats}n1invoice"

