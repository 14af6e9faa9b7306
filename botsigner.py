#!/usr/bin/env python3
from nostr.event import Event
from nostr.filter import Filter
from nostr.key import PrivateKey
from urllib.parse import urlparse, parse_qs
import json
import os
import queue
import secrets
import threading
import time
import botfiles as files
import botutils as utils
from botrelays import EOSE, RelayPool
from boterrors import ConfigError, RelayClosedError, SessionClosed, SessionError, SignerRejected, ZapBotError

KIND_NOSTR_CONNECT = 24133

CONNECTING = "connecting"
APPROVED = "approved"
ACTIVE = "active"
DEGRADED = "degraded"
RECONNECTING = "reconnecting"
FAILED = "failed"
CLOSED = "closed"

_CLOSED = object()

def parseBunkerUrl(bunkerUrl):
    u = urlparse(bunkerUrl)
    if u.scheme != "bunker":
        raise ConfigError(f"invalid bunker url scheme: expected bunker, got {u.scheme}")
    remotePubkey = u.netloc
    if not utils.isHex(remotePubkey) or len(remotePubkey) != 64:
        raise ConfigError("invalid bunker url: remote signer pubkey must be 64 hex characters")
    query = parse_qs(u.query)
    relays = query.get("relay", [])
    if len(relays) == 0:
        raise ConfigError("invalid bunker url: missing relay parameter")
    secret = query.get("secret", [None])[0]
    return remotePubkey.lower(), relays, secret

def loadClientKey(filename, logger):
    # the remote signer remembers this key, so reuse it across restarts
    if os.path.exists(filename):
        with open(filename) as f:
            keyHex = f.read().strip()
        if utils.isHex(keyHex) and len(keyHex) == 64:
            return PrivateKey(bytes.fromhex(keyHex))
        logger.warning(f"Signer key file {filename} is malformed. Generating a new key")
    else:
        logger.info(f"No signer key file at {filename}. Generating a new key")
    clientKey = PrivateKey()
    files.saveTextFile(filename, clientKey.hex(), mode=0o600)
    return clientKey

class BunkerClient:
    """One live session with a remote signer.

    Requests and responses are kind 24133 events encrypted to each other's
    keys. A reader thread matches responses to waiting calls by request id.
    """

    def __init__(self, ctx, bunkerUrl, clientKey, poolFactory=RelayPool, callTimeout=15, connectTimeout=120):
        self.ctx = ctx
        self.logger = ctx.logger
        self.remotePubkey, self.relays, self.secret = parseBunkerUrl(bunkerUrl)
        self.clientKey = clientKey
        self.clientPubkey = clientKey.public_key.hex()
        self.poolFactory = poolFactory
        self.callTimeout = callTimeout
        self.connectTimeout = connectTimeout
        self.pool = None
        self.userPubkey = None
        self._pending = {}
        self._pendingLock = threading.Lock()
        self._closed = threading.Event()
        self._reader = None

    def connect(self, deadline=None):
        if deadline is None: deadline = utils.Deadline(self.ctx.shutdown, self.connectTimeout)
        self.pool = self.poolFactory(self.ctx, self.relays).connect()
        subid = utils.makeSubscriptionId("bunker")
        since = int(time.time()) - 10
        responses = self.pool.subscribe(subid, [Filter(kinds=[KIND_NOSTR_CONNECT], pubkey_refs=[self.clientPubkey], since=since)])
        self._reader = threading.Thread(target=self._readResponses, args=(responses,), name="bunker-reader", daemon=True)
        self._reader.start()
        params = [self.remotePubkey]
        if self.secret is not None: params.append(self.secret)
        try:
            self._rpc("connect", params, deadline)
        except SignerRejected as err:
            if "already connected" not in str(err):
                self.close()
                raise
            self.logger.info("Remote signer reports connection already exists. Continuing")
        except Exception:
            self.close()
            raise
        self.logger.info("Connected to remote signer")
        return self

    def close(self):
        self._closed.set()
        with self._pendingLock:
            waiting = list(self._pending.values())
        for q in waiting: q.put(_CLOSED)
        pool = self.pool
        self.pool = None
        if pool is not None: pool.close()

    def _readResponses(self, responses):
        while not self._closed.is_set() and not self.ctx.shutdown.is_set():
            try:
                item = responses.get(timeout=0.25)
            except queue.Empty:
                continue
            if item is EOSE: continue
            event = item.event
            if event.public_key != self.remotePubkey: continue
            try:
                message = json.loads(self.clientKey.decrypt_message(event.content, event.public_key))
            except (ValueError, TypeError) as err:
                self.logger.debug(f"Could not decrypt remote signer message: {str(err)}")
                continue
            if not isinstance(message, dict): continue
            with self._pendingLock:
                waiting = self._pending.get(message.get("id"))
            if waiting is not None: waiting.put(message)

    def _rpc(self, method, params, deadline):
        deadline = deadline.child(self.callTimeout) if method != "connect" else deadline
        requestId = secrets.token_hex(8)
        waiting = queue.Queue()
        with self._pendingLock:
            self._pending[requestId] = waiting
        try:
            # a caller may still hold this handle after it was swapped out
            pool = self.pool
            if pool is None or self._closed.is_set():
                raise SessionClosed(f"remote signer session closed before {method}")
            request = json.dumps({"id": requestId, "method": method, "params": params})
            content = self.clientKey.encrypt_message(request, self.remotePubkey)
            event = Event(content=content, public_key=self.clientPubkey, kind=KIND_NOSTR_CONNECT, tags=[["p", self.remotePubkey]])
            self.clientKey.sign_event(event)
            self.logger.debug(f"Sending {method} request to remote signer")
            try:
                pool.publish(event)
            except RelayClosedError as err:
                raise SessionClosed(f"remote signer relay closed: {str(err)}") from err
            while True:
                response = deadline.wait(waiting)
                if response is _CLOSED:
                    raise SessionClosed(f"remote signer session closed during {method}")
                if response.get("result") == "auth_url":
                    self.logger.info(f"Remote signer requires approval. Auth URL: {response.get('error')}")
                    continue
                if response.get("error"):
                    raise SignerRejected(f"remote signer rejected {method}: {response['error']}")
                return response.get("result")
        finally:
            with self._pendingLock:
                self._pending.pop(requestId, None)

    def getPublicKey(self, deadline):
        if self.userPubkey is None:
            self.userPubkey = self._rpc("get_public_key", [], deadline)
        return self.userPubkey

    def signEvent(self, event, deadline):
        unsigned = {
            "created_at": event.created_at,
            "kind": int(event.kind),
            "tags": event.tags,
            "content": event.content,
        }
        if event.public_key is not None: unsigned["pubkey"] = event.public_key
        result = self._rpc("sign_event", [json.dumps(unsigned)], deadline)
        try:
            d = json.loads(result)
            signed = Event(content=d["content"], public_key=d["pubkey"], created_at=d["created_at"],
                           kind=d["kind"], tags=d["tags"], signature=d["sig"])
        except (ValueError, TypeError, KeyError) as err:
            raise SignerRejected(f"remote signer returned malformed event: {str(err)}") from err
        if signed.id != d.get("id", signed.id) or not signed.verify():
            raise SignerRejected("remote signer returned an event with an invalid signature")
        return signed

    def nip04Decrypt(self, senderPubkey, ciphertext, deadline):
        return self._rpc("nip04_decrypt", [senderPubkey, ciphertext], deadline)

    def nip44Decrypt(self, senderPubkey, ciphertext, deadline):
        return self._rpc("nip44_decrypt", [senderPubkey, ciphertext], deadline)

class ReconnectingSigner:
    """Signing session that survives dropped connections.

    Callers read a snapshot of the current handle; a reconnect only holds
    the write lock long enough to swap it. A session class failure gets
    exactly one reconnect and one retry, and a keepalive thread swaps in a
    fresh handle every keepaliveSeconds.
    """

    def __init__(self, ctx, connectHandle, keepaliveSeconds=4*60*60):
        self.ctx = ctx
        self.logger = ctx.logger
        self.connectHandle = connectHandle
        self.keepaliveSeconds = keepaliveSeconds
        self.state = CONNECTING
        self.reconnects = 0
        self._handle = None
        self._generation = 0
        self._rwlock = utils.ReadWriteLock()
        self._reconnectLock = threading.Lock()
        self._closed = threading.Event()
        self._keepalive = None

    def start(self):
        handle = self.connectHandle()
        self.state = APPROVED
        self._swap(handle)
        self.state = ACTIVE
        self._keepalive = threading.Thread(target=self._keepaliveLoop, name="signer-keepalive", daemon=True)
        self._keepalive.start()
        return self

    def close(self):
        self._closed.set()
        if self._keepalive is not None and self._keepalive is not threading.current_thread():
            self._keepalive.join(timeout=5)
        handle, _ = self._snapshot()
        if handle is not None: handle.close()
        self.state = CLOSED

    def _snapshot(self):
        self._rwlock.acquireRead()
        try:
            return self._handle, self._generation
        finally:
            self._rwlock.releaseRead()

    def _swap(self, handle):
        self._rwlock.acquireWrite()
        try:
            old = self._handle
            self._handle = handle
            self._generation += 1
        finally:
            self._rwlock.releaseWrite()
        if old is not None: old.close()

    def reconnect(self, staleGeneration=None):
        with self._reconnectLock:
            if staleGeneration is not None and staleGeneration != self._generation:
                return  # already replaced since the caller took its snapshot
            self.logger.info("Reconnecting remote signer")
            self.state = RECONNECTING
            try:
                handle = self.connectHandle()
            except (ZapBotError, OSError) as err:
                self.state = FAILED
                self.logger.error(f"Remote signer reconnect failed: {str(err)}")
                raise
            self._swap(handle)
            self.reconnects += 1
            self.state = ACTIVE
            self.logger.info("Remote signer reconnected")

    def _keepaliveLoop(self):
        while True:
            nextAt = time.monotonic() + self.keepaliveSeconds
            while time.monotonic() < nextAt:
                if self._closed.is_set() or self.ctx.shutdown.is_set(): return
                self._closed.wait(min(1.0, max(0.0, nextAt - time.monotonic())))
            if self._closed.is_set() or self.ctx.shutdown.is_set(): return
            self.logger.info("Proactive remote signer keepalive reconnect")
            try:
                self.reconnect()
            except (ZapBotError, OSError) as err:
                self.logger.warning(f"Keepalive reconnect failed, keeping current session: {str(err)}")

    def _call(self, name, fn, deadline):
        handle, generation = self._snapshot()
        try:
            return fn(handle, deadline)
        except SessionError as err:
            if self.ctx.shutdown.is_set(): raise
            self.logger.warning(f"Remote signer {name} failed with session error: {str(err)}")
            self.state = DEGRADED
            try:
                self.reconnect(generation)
            except (ZapBotError, OSError) as reconnErr:
                raise err from reconnErr
            handle, _ = self._snapshot()
            return fn(handle, deadline)

    def getPublicKey(self, deadline):
        return self._call("get_public_key", lambda h, d: h.getPublicKey(d), deadline)

    def signEvent(self, event, deadline):
        return self._call("sign_event", lambda h, d: h.signEvent(event, d), deadline)

    def nip04Decrypt(self, senderPubkey, ciphertext, deadline):
        return self._call("nip04_decrypt", lambda h, d: h.nip04Decrypt(senderPubkey, ciphertext, d), deadline)

    def nip44Decrypt(self, senderPubkey, ciphertext, deadline):
        return self._call("nip44_decrypt", lambda h, d: h.nip44Decrypt(senderPubkey, ciphertext, d), deadline)

def makeSigner(ctx, poolFactory=RelayPool):
    signerConfig = ctx.config["signer"]
    clientKey = loadClientKey(signerConfig["keyFile"], ctx.logger)
    bunkerUrl = ctx.config["author"]["bunkerUrl"]
    callTimeout = signerConfig.get("callTimeout", 15)
    def connectHandle():
        return BunkerClient(ctx, bunkerUrl, clientKey, poolFactory, callTimeout).connect()
    keepaliveSeconds = int(float(signerConfig.get("keepaliveHours", 4)) * 60 * 60)
    return ReconnectingSigner(ctx, connectHandle, keepaliveSeconds)
