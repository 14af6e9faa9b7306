#!/usr/bin/env python3
from nostr.event import EventKind
from nostr.filter import Filter
from urllib.parse import urlparse
import bech32
import json
import requests
import threading
import time
from botrelays import RelayPool
from boterrors import AmountOutOfBounds, EmptyInvoice, EndpointUnreachable, InvalidEndpoint, NoPaymentAddress, RemoteRejected

_profileTimeout = 5
_cacheSeconds = 86400

def gettorproxies():
    # with tor service installed, default port is 9050
    # to find the port to use, can run the following
    #     cat /etc/tor/torrc | grep SOCKSPort | grep -v "#" | awk '{print $2}'
    return {'http': 'socks5h://127.0.0.1:9050','https': 'socks5h://127.0.0.1:9050'}

def convertAddressToEndpoint(address):
    identityParts = str(address).split("@")
    if len(identityParts) != 2: return ""
    username = identityParts[0]
    domainname = identityParts[1]
    if len(username) == 0 or len(domainname) == 0: return ""
    protocol = "https"
    if domainname.endswith(".onion"): protocol = "http"
    return f"{protocol}://{domainname}/.well-known/lnurlp/{username}"

def lnurlToEndpoint(lnurl):
    # bech32 lnurl strings routinely exceed the 90 character limit of
    # bech32.bech32_decode, so the checksum is verified directly
    lower = str(lnurl).strip().lower()
    if lower.startswith("lightning:"): lower = lower[10:]
    pos = lower.rfind("1")
    if pos < 1 or pos + 7 > len(lower): return ""
    hrp = lower[:pos]
    if hrp != "lnurl": return ""
    data = [bech32.CHARSET.find(x) for x in lower[pos+1:]]
    if -1 in data: return ""
    if not bech32.bech32_verify_checksum(hrp, data): return ""
    decoded = bech32.convertbits(data[:-6], 5, 8, False)
    if decoded is None: return ""
    try:
        return bytes(decoded).decode("utf-8")
    except UnicodeDecodeError:
        return ""

def endpointToLnurl(endpoint):
    endpointBits = bech32.convertbits(bytes(endpoint, "utf-8"), 8, 5)
    return bech32.bech32_encode("lnurl", endpointBits)

def encodeZapRequest(zapRequest):
    o = {
            "id": zapRequest.id,
            "pubkey": zapRequest.public_key,
            "created_at": zapRequest.created_at,
            "kind": int(zapRequest.kind),
            "tags": zapRequest.tags,
            "content": zapRequest.content,
            "sig": zapRequest.signature,
        }
    return json.dumps(o)

def extractPaymentEndpoint(profile):
    # lud16 first, then the legacy bech32 lud06
    lud16 = profile.get("lud16")
    if isinstance(lud16, str) and len(lud16) > 0:
        if lud16.lower().startswith("lnurl"): return lnurlToEndpoint(lud16)
        return convertAddressToEndpoint(lud16.strip())
    lud06 = profile.get("lud06")
    if isinstance(lud06, str) and lud06.lower().startswith("lnurl"):
        return lnurlToEndpoint(lud06)
    return ""

def getMillisats(info, key):
    value = info.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise InvalidEndpoint(f"LNURL metadata has an invalid {key}: {value!r}")
    try:
        return int(value)
    except (ValueError, OverflowError) as err:
        raise InvalidEndpoint(f"LNURL metadata has an invalid {key}: {value!r}") from err

class PaymentNegotiator:
    """Turns an author into a payable invoice via their lightning address."""

    def __init__(self, ctx, relays, poolFactory=RelayPool, clock=time.time):
        self.ctx = ctx
        self.logger = ctx.logger
        self.config = ctx.config.get("lnurl", {})
        self.relays = list(relays)
        self.poolFactory = poolFactory
        self.clock = clock
        self.endpointCache = {}
        self._cacheLock = threading.Lock()

    def gettimeouts(self, deadline=None):
        connectTimeout = 5
        readTimeout = 30
        if "connectTimeout" in self.config: connectTimeout = self.config["connectTimeout"]
        if "readTimeout" in self.config: readTimeout = self.config["readTimeout"]
        if deadline is not None:
            deadline.check()
            remaining = deadline.remaining()
            if remaining is not None:
                remaining = max(remaining, 0.1)
                connectTimeout = min(connectTimeout, remaining)
                readTimeout = min(readTimeout, remaining)
        return (connectTimeout, readTimeout)

    def isProviderAllowed(self, endpoint):
        domainname = urlparse(endpoint).hostname or ""
        return domainname not in self.config.get("denyProviders", [])

    def geturl(self, url, params=None, deadline=None):
        useTor = ".onion" in (urlparse(url).hostname or "")
        proxies = gettorproxies() if useTor else {}
        timeouts = self.gettimeouts(deadline)
        try:
            resp = requests.get(url, params=params, timeout=timeouts, allow_redirects=True, proxies=proxies, verify=True)
        except requests.RequestException as err:
            self.logger.warning(f"Error getting data from LN URL Provider from url ({url}): {str(err)}")
            raise EndpointUnreachable(f"could not reach {url}: {str(err)}") from err
        if deadline is not None: deadline.check()
        try:
            body = resp.json()
        except ValueError:
            body = None
        return resp.status_code, body

    def resolvePaymentEndpoint(self, authorId, deadline):
        with self._cacheLock:
            cached = self.endpointCache.get(authorId)
        if cached is not None and cached["created_at"] > self.clock() - _cacheSeconds:
            return cached["endpoint"]
        self.logger.debug(f"Fetching lightning address for {authorId}")
        filters = [Filter(kinds=[EventKind.SET_METADATA], authors=[authorId], limit=1)]
        # the message pool drops event ids it has already seen, so each lookup gets fresh connections
        lookupPool = self.poolFactory(self.ctx, self.relays).connect()
        try:
            profiles = lookupPool.fetch(filters, deadline.child(_profileTimeout), prefix="profile")
        finally:
            lookupPool.close()
        profiles = [p for p in profiles if p.public_key == authorId and p.verify()]
        for profile in sorted(profiles, key=lambda p: p.created_at, reverse=True):
            try:
                content = json.loads(profile.content)
            except ValueError as err:
                self.logger.debug(f"Failed to parse profile metadata for {authorId}: {str(err)}")
                continue
            if not isinstance(content, dict): continue
            endpoint = extractPaymentEndpoint(content)
            if len(endpoint) == 0: continue
            with self._cacheLock:
                self.endpointCache[authorId] = {"endpoint": endpoint, "created_at": self.clock()}
            return endpoint
        raise NoPaymentAddress(f"no lightning address found in profile of {authorId}")

    def getPayInfo(self, endpoint, deadline=None):
        if not self.isProviderAllowed(endpoint):
            raise InvalidEndpoint(f"provider of {endpoint} is on the denyProviders list")
        self.logger.debug(f"Fetching LNURL metadata from {endpoint}")
        status, info = self.geturl(endpoint, deadline=deadline)
        if status != 200:
            raise InvalidEndpoint(f"LNURL returned status {status}")
        if not isinstance(info, dict):
            raise InvalidEndpoint("LNURL metadata is not a json object")
        if info.get("tag") != "payRequest":
            raise InvalidEndpoint(f"invalid tag {info.get('tag')}")
        if not all(k in info for k in ("callback","minSendable","maxSendable")):
            raise InvalidEndpoint("LNURL metadata is missing callback, minSendable, or maxSendable")
        if not isinstance(info["callback"], str) or not info["callback"].startswith(("https://", "http://")):
            raise InvalidEndpoint(f"LNURL metadata has an invalid callback: {info['callback']!r}")
        return info

    def negotiateInvoice(self, endpoint, amountSats, zapRequest=None, comment=None, deadline=None):
        info = self.getPayInfo(endpoint, deadline)
        amountMillisats = int(round(amountSats * 1000))
        minSendable = getMillisats(info, "minSendable")
        maxSendable = getMillisats(info, "maxSendable")
        if amountMillisats < minSendable:
            raise AmountOutOfBounds(minSendable, amountMillisats)
        if amountMillisats > maxSendable:
            raise AmountOutOfBounds(maxSendable, amountMillisats)
        params = {"amount": amountMillisats}
        if zapRequest is not None:
            if not info.get("allowsNostr"):
                self.logger.warning(f"LN Provider at {endpoint} does not advertise nostr support. Zap receipt may not be published")
            params["nostr"] = encodeZapRequest(zapRequest)
            params["lnurl"] = endpointToLnurl(endpoint)
        elif comment:
            params["comment"] = comment
        self.logger.debug("Requesting invoice from LNURL service")
        status, invoiceResponse = self.geturl(info["callback"], params, deadline)
        if not isinstance(invoiceResponse, dict):
            raise RemoteRejected(f"callback returned status {status} without a json body")
        if invoiceResponse.get("status") == "ERROR":
            errReason = invoiceResponse.get("reason") or "unreported reason"
            self.logger.warning(f"Invoice request error: {errReason}")
            raise RemoteRejected(errReason)
        if status != 200:
            raise RemoteRejected(f"callback returned status {status}")
        paymentRequest = invoiceResponse.get("pr")
        if not isinstance(paymentRequest, str) or not paymentRequest:
            raise EmptyInvoice()
        return paymentRequest
