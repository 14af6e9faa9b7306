#!/usr/bin/env python3
from dataclasses import dataclass
from nostr.event import Event
from nostr.filter import Filter
from nostr.key import PrivateKey
from urllib.parse import urlparse, parse_qs
import json
import botutils as utils
from botrelays import EOSE, RelayPool
from boterrors import ConfigError, RelayClosedError, ResponseTimeout, SessionTimeout, WalletError, ZapBotError

KIND_WALLET_REQUEST = 23194
KIND_WALLET_RESPONSE = 23195

_publishAttempts = 3
_publishRetryPause = 1
_responseTimeout = 30

@dataclass(frozen=True)
class PayInvoiceResult:
    preimage: str
    feesPaidMillisats: int

@dataclass(frozen=True)
class GetBalanceResult:
    balanceMillisats: int

@dataclass(frozen=True)
class WalletConnection:
    walletPubkey: str
    relayUrl: str
    secret: str

def parseNwcUrl(nwcUrl):
    u = urlparse(nwcUrl)
    if u.scheme != "nostr+walletconnect":
        raise ConfigError(f"invalid nwc url scheme: expected nostr+walletconnect, got {u.scheme}")
    walletPubkey = u.netloc or u.path.lstrip("/")
    if not utils.isHex(walletPubkey) or len(walletPubkey) != 64:
        raise ConfigError("invalid nwc url: wallet pubkey must be 64 hex characters")
    query = parse_qs(u.query)
    relayUrl = query.get("relay", [""])[0]
    secret = query.get("secret", [""])[0]
    if not relayUrl:
        raise ConfigError("invalid nwc url: missing relay parameter")
    if not secret:
        raise ConfigError("invalid nwc url: missing secret parameter")
    if not utils.isHex(secret) or len(secret) != 64:
        raise ConfigError("invalid nwc url: secret must be 64 hex characters")
    return WalletConnection(walletPubkey.lower(), relayUrl, secret)

def decodePayInvoice(result, logger=None):
    # the wallet reported no error, so the payment stands even if the details are unreadable
    if not isinstance(result, dict):
        if logger is not None: logger.warning(f"Wallet pay_invoice result is not an object: {utils.truncate(result)}")
        result = {}
    preimage = result.get("preimage")
    if not isinstance(preimage, str): preimage = ""
    feesPaid = result.get("fees_paid")
    if not isinstance(feesPaid, (int, float)) or isinstance(feesPaid, bool):
        if feesPaid is not None and logger is not None:
            logger.warning(f"Wallet reported unreadable fees_paid: {utils.truncate(feesPaid)}")
        feesPaid = 0
    return PayInvoiceResult(preimage, int(feesPaid))

def decodeGetBalance(result):
    if not isinstance(result, dict) or not isinstance(result.get("balance"), (int, float)):
        raise WalletError("INVALID_RESPONSE", "invalid balance in response")
    return GetBalanceResult(int(result["balance"]))

class NWCClient:
    """Commands a remote wallet with encrypted request/response events."""

    def __init__(self, ctx, nwcUrl, poolFactory=RelayPool, responseTimeout=_responseTimeout):
        self.ctx = ctx
        self.logger = ctx.logger
        self.connection = parseNwcUrl(nwcUrl)
        self.clientKey = PrivateKey(bytes.fromhex(self.connection.secret))
        self.clientPubkey = self.clientKey.public_key.hex()
        self.poolFactory = poolFactory
        self.responseTimeout = responseTimeout
        self.pool = None
        self.logger.info("NWC client created")

    def connect(self):
        self.pool = self.poolFactory(self.ctx, [self.connection.relayUrl]).connect()
        self.logger.info(f"Connected to wallet relay {self.connection.relayUrl}")
        return self

    def close(self):
        if self.pool is not None:
            self.logger.info("Closing wallet relay connection")
            self.pool.close()
            self.pool = None

    def payInvoice(self, invoice, deadline):
        result = self._sendRequest("pay_invoice", {"invoice": invoice}, deadline)
        paid = decodePayInvoice(result, self.logger)
        self.logger.info("Invoice paid successfully")
        return paid

    def getBalance(self, deadline):
        result = self._sendRequest("get_balance", {}, deadline)
        balance = decodeGetBalance(result)
        self.logger.info("Wallet balance fetched")
        return balance

    def makeRequestEvent(self, method, params):
        request = json.dumps({"method": method, "params": params})
        content = self.clientKey.encrypt_message(request, self.connection.walletPubkey)
        event = Event(content=content, public_key=self.clientPubkey, kind=KIND_WALLET_REQUEST,
                      tags=[["p", self.connection.walletPubkey]])
        self.clientKey.sign_event(event)
        return event

    def _publish(self, event, deadline):
        lastErr = None
        for attempt in range(1, _publishAttempts + 1):
            try:
                self.pool.publish(event)
                return
            except RelayClosedError as err:
                lastErr = err
                self.logger.warning(f"Wallet relay connection closed on publish attempt {attempt}: {str(err)}")
                if attempt == _publishAttempts: break
                deadline.sleep(_publishRetryPause)
                try:
                    self.pool.reconnect()
                except (ZapBotError, OSError) as reconnErr:
                    self.logger.warning(f"Wallet relay reconnect failed: {str(reconnErr)}")
        raise lastErr

    def _sendRequest(self, method, params, deadline):
        if self.pool is None: raise RelayClosedError("not connected to wallet relay")
        event = self.makeRequestEvent(method, params)
        # subscribe first so a fast wallet cannot answer before we listen
        subid = utils.makeSubscriptionId("nwc")
        filters = [Filter(kinds=[KIND_WALLET_RESPONSE], authors=[self.connection.walletPubkey],
                          event_refs=[event.id], limit=1)]
        responses = self.pool.subscribe(subid, filters)
        try:
            self.logger.debug(f"Sending {method} request to wallet")
            self._publish(event, deadline)
            # the response window starts once the request is out
            responseDeadline = deadline.child(self.responseTimeout)
            while True:
                try:
                    item = responseDeadline.wait(responses)
                except SessionTimeout as err:
                    if self.ctx.shutdown.is_set(): raise
                    self.logger.error(f"Timeout waiting for wallet response to {method}")
                    raise ResponseTimeout() from err
                if item is EOSE: continue
                response = self._decryptResponse(item.event)
                if response is not None: break
        finally:
            if self.pool is not None: self.pool.unsubscribe(subid)
        error = response.get("error")
        if error:
            code = error.get("code", "UNKNOWN") if isinstance(error, dict) else "UNKNOWN"
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            self.logger.error(f"Wallet returned {method} error: {code} - {message}")
            raise WalletError(code, message)
        return response.get("result")

    def _decryptResponse(self, event):
        try:
            decrypted = self.clientKey.decrypt_message(event.content, self.connection.walletPubkey)
            response = json.loads(decrypted)
        except (ValueError, TypeError) as err:
            self.logger.error(f"Failed to decrypt or parse wallet response: {str(err)}")
            return None
        if not isinstance(response, dict): return None
        return response
