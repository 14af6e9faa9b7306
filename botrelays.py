#!/usr/bin/env python3
from nostr.filter import Filters
from nostr.message_type import ClientMessageType
from nostr.relay_manager import RelayManager
from websocket import WebSocketConnectionClosedException
import json
import queue
import ssl
import threading
import time
import botutils as utils
from boterrors import RelayClosedError, SessionTimeout

_relayConnectTime = 1.25
_siftInterval = 0.05

EOSE = object()     # queued when a relay reports end of stored events

class RelayPool:
    """A set of relay connections with one reader thread.

    The reader sifts the shared message pool and hands each event to the
    queue of the subscription it arrived on, so several callers can hold
    subscriptions on the same connections at once.
    """

    def __init__(self, ctx, urls, connectTime=_relayConnectTime):
        self.ctx = ctx
        self.logger = ctx.logger
        self.urls = list(urls)
        self.connectTime = connectTime
        self.relayManager = None
        self._subscriptions = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._reader = None

    def connect(self):
        self.logger.debug(f"Connecting to relays: {', '.join(self.urls)}")
        relayManager = RelayManager()
        for url in self.urls:
            # the library default subscriptions dict is shared between relays
            relayManager.add_relay(url=url, subscriptions={})
        relayManager.open_connections({"cert_reqs": ssl.CERT_REQUIRED})
        self.relayManager = relayManager
        self._stopped = threading.Event()
        self._reader = threading.Thread(target=self._siftMessagePool, name="relaypool-reader", daemon=True)
        self._reader.start()
        self._waitForConnections()
        return self

    def _waitForConnections(self):
        waitUntil = time.monotonic() + self.connectTime
        while time.monotonic() < waitUntil:
            if self.connectedCount() == len(self.urls): return
            if self.ctx.shutdown.wait(_siftInterval): return

    def connectedCount(self):
        if self.relayManager is None: return 0
        count = 0
        for relay in self.relayManager.relays.values():
            sock = getattr(getattr(relay, "ws", None), "sock", None)
            if sock is not None and getattr(sock, "connected", False): count += 1
        return count

    def close(self):
        self._stopped.set()
        if self.relayManager is None: return
        self.logger.debug(f"Disconnecting from relays: {', '.join(self.urls)}")
        try:
            self.relayManager.close_connections()
        except Exception as err:
            self.logger.warning(f"Error closing relay connections: {str(err)}")
        self.relayManager = None

    def reconnect(self):
        subscriptions = []
        with self._lock:
            for subid, (filters, q) in self._subscriptions.items():
                subscriptions.append((subid, filters, q))
        self.close()
        self.connect()
        # carry live subscriptions over to the new connections
        for subid, filters, q in subscriptions:
            self._sendRequest(subid, filters, q)

    def _siftMessagePool(self):
        relayManager = self.relayManager
        stopped = self._stopped
        messagePool = relayManager.message_pool
        while not stopped.is_set():
            while messagePool.has_events():
                eventMsg = messagePool.get_event()
                q = self._queueFor(eventMsg.subscription_id)
                if q is not None:
                    q.put(eventMsg)
                else:
                    self.logger.debug(f"Unexpected event from relay {eventMsg.url} with subscription {eventMsg.subscription_id}")
                messagePool.events.task_done()
            while messagePool.has_notices():
                notice = messagePool.get_notice()
                self.logger.info(f"RELAY NOTICE FROM {notice.url}: {notice.content}")
                messagePool.notices.task_done()
            while messagePool.has_eose_notices():
                eoseMsg = messagePool.get_eose_notice()
                q = self._queueFor(eoseMsg.subscription_id)
                if q is not None: q.put(EOSE)
                messagePool.eose_notices.task_done()
            stopped.wait(_siftInterval)

    def _queueFor(self, subid):
        with self._lock:
            entry = self._subscriptions.get(subid)
        return None if entry is None else entry[1]

    def _sendRequest(self, subid, filters, q):
        with self._lock:
            self._subscriptions[subid] = (filters, q)
        self.relayManager.add_subscription(subid, filters)
        request = [ClientMessageType.REQUEST, subid]
        request.extend(filters.to_json_array())
        self.publishMessage(json.dumps(request))

    def subscribe(self, subid, filterList):
        if self.relayManager is None: raise RelayClosedError("relay pool is not connected")
        filters = filterList if isinstance(filterList, Filters) else Filters(list(filterList))
        q = queue.Queue()
        self._sendRequest(subid, filters, q)
        return q

    def unsubscribe(self, subid):
        with self._lock:
            self._subscriptions.pop(subid, None)
        if self.relayManager is None: return
        try:
            self.publishMessage(json.dumps([ClientMessageType.CLOSE, subid]))
            self.relayManager.close_subscription(subid)
        except (RelayClosedError, KeyError) as err:
            self.logger.debug(f"Could not close subscription {subid}: {str(err)}")

    def publishMessage(self, message):
        if self.relayManager is None: raise RelayClosedError("relay pool is not connected")
        try:
            self.relayManager.publish_message(message)
        except (WebSocketConnectionClosedException, BrokenPipeError, ConnectionError) as err:
            raise RelayClosedError(f"connection closed: {str(err)}") from err

    def publish(self, event):
        if self.relayManager is None: raise RelayClosedError("relay pool is not connected")
        try:
            self.relayManager.publish_event(event)
        except (WebSocketConnectionClosedException, BrokenPipeError, ConnectionError) as err:
            raise RelayClosedError(f"connection closed: {str(err)}") from err

    def fetch(self, filterList, deadline, prefix="fetch"):
        # stored events until every relay sent EOSE or the deadline passes
        subid = utils.makeSubscriptionId(prefix)
        q = self.subscribe(subid, filterList)
        events = []
        eoseCount = 0
        try:
            while eoseCount < len(self.urls):
                try:
                    item = deadline.wait(q)
                except SessionTimeout:
                    break
                if item is EOSE:
                    eoseCount += 1
                else:
                    events.append(item.event)
        finally:
            self.unsubscribe(subid)
        return events

    def stream(self, filterList, prefix="stream", deadline=None):
        # yields (event, relayUrl) until shutdown, close, or deadline expiry
        subid = utils.makeSubscriptionId(prefix)
        q = self.subscribe(subid, filterList)
        try:
            while not self.ctx.shutdown.is_set() and not self._stopped.is_set():
                if deadline is not None and deadline.expired(): break
                try:
                    item = q.get(timeout=0.25)
                except queue.Empty:
                    continue
                if item is EOSE: continue
                yield item.event, item.url
        finally:
            self.unsubscribe(subid)
