#!/usr/bin/env python3
import bech32
import os
import queue
import secrets
import sys
import threading
import time
from boterrors import SessionCanceled, SessionTimeout

def bech32ToHex(bech32Input):
    hrp, e2 = bech32.bech32_decode(bech32Input)
    if hrp is None: return ""
    tlv_bytes = bech32.convertbits(e2, 5, 8)[:-1]
    if len(tlv_bytes) > 32:
        tlv_length = tlv_bytes[1]
        tlv_value = tlv_bytes[2:tlv_length+2]
        hexOutput = bytes(tlv_value).hex()
    else:
        hexOutput = bytes(tlv_bytes).hex()
    return hexOutput

def hexToBech32(hexInput, hrp):
    b = bytes.fromhex(hexInput)
    bits = bech32.convertbits(b,8,5)
    bech32output = bech32.bech32_encode(hrp, bits)
    return bech32output

def isHex(s):
    return len(s) > 0 and set(s).issubset(set('abcdefABCDEF0123456789'))

def normalizeToHex(v):
    # v can be hex of length 64, npub bech32, or a nostr: uri
    if v is None: return None
    v = str(v).strip()
    if v.startswith("nostr:"): v = v[6:]
    if len(v) == 0: return None
    if v.startswith("n"): v = bech32ToHex(v)
    if isHex(v) and len(v) == 64: return v.lower()
    return None

def normalizeToBech32(v, hrp):
    h = normalizeToHex(v)
    if h is None: return None
    return hexToBech32(h, hrp)

def getCommandArg(p):
    b = False
    v = None
    l = str(p).lower()
    for a in sys.argv:
        if b:
            v = a
            b = False
        elif f"--{l}" == str(a).lower():
            b = True
    return v

def startOfUtcDay(secTime=None):
    if secTime is None: secTime = int(time.time())
    return int(secTime) - (int(secTime) % 86400)

def makeFolderIfNotExists(path):
    if path is None or len(path) == 0: return
    if not os.path.exists(path): os.makedirs(path)

def makeSubscriptionId(prefix):
    return f"{prefix}_{secrets.token_hex(4)}"

def truncate(s, maxLen=80):
    s = str(s)
    if len(s) <= maxLen: return s
    return s[:maxLen] + "..."

class Deadline:
    """A timeout scoped under the shutdown signal.

    A child never outlives its parent, and every wait wakes up as soon as
    the shutdown event is set.
    """

    pollInterval = 0.25

    def __init__(self, shutdown, seconds=None, parent=None):
        self.shutdown = shutdown
        expiresAt = None
        if seconds is not None: expiresAt = time.monotonic() + seconds
        if parent is not None and parent.expiresAt is not None:
            expiresAt = parent.expiresAt if expiresAt is None else min(expiresAt, parent.expiresAt)
        self.expiresAt = expiresAt

    def child(self, seconds=None):
        return Deadline(self.shutdown, seconds, self)

    def remaining(self):
        if self.expiresAt is None: return None
        return max(0.0, self.expiresAt - time.monotonic())

    def canceled(self):
        return self.shutdown.is_set()

    def expired(self):
        return self.expiresAt is not None and time.monotonic() >= self.expiresAt

    def check(self):
        if self.canceled(): raise SessionCanceled()
        if self.expired(): raise SessionTimeout()

    def sleep(self, seconds):
        remaining = self.remaining()
        if remaining is not None: seconds = min(seconds, remaining)
        if self.shutdown.wait(seconds): raise SessionCanceled()

    def wait(self, q):
        # next item from q, or SessionCanceled/SessionTimeout once nothing is queued
        while True:
            try:
                return q.get_nowait()
            except queue.Empty:
                self.check()
            waitTime = self.pollInterval
            remaining = self.remaining()
            if remaining is not None: waitTime = min(waitTime, remaining)
            try:
                return q.get(timeout=max(waitTime, 0.001))
            except queue.Empty:
                continue

class ReadWriteLock:
    """Many readers or one writer. Writers are preferred once waiting."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writersWaiting = 0

    def acquireRead(self):
        with self._cond:
            while self._writer or self._writersWaiting > 0:
                self._cond.wait()
            self._readers += 1

    def releaseRead(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0: self._cond.notify_all()

    def acquireWrite(self):
        with self._cond:
            self._writersWaiting += 1
            while self._writer or self._readers > 0:
                self._cond.wait()
            self._writersWaiting -= 1
            self._writer = True

    def releaseWrite(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()
