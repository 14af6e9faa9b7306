import json
import pytest
from nostr.key import PrivateKey
import botnwc as nwc
from boterrors import ConfigError, RelayClosedError, ResponseTimeout, WalletError
from conftest import FakePool, eventMessage, makeContext, signedEvent

class WalletRelay(FakePool):
    """Answers wallet requests the way a wallet service would."""

    def __init__(self, ctx, urls, walletKey, reply, failPublish=0):
        super().__init__(ctx, urls, failPublish=failPublish)
        self.walletKey = walletKey
        self.reply = reply
        self.requests = []

    def publish(self, event):
        super().publish(event)
        request = json.loads(self.walletKey.decrypt_message(event.content, event.public_key))
        self.requests.append(request)
        response = self.reply(request)
        if response is None: return
        content = self.walletKey.encrypt_message(json.dumps(response), event.public_key)
        responseEvent = signedEvent(self.walletKey, content, kind=nwc.KIND_WALLET_RESPONSE,
                                    tags=[["e", event.id], ["p", event.public_key]])
        for q in list(self.subscriptions.values()):
            q.put(eventMessage(responseEvent))

def makeNwcUrl(walletKey, clientKey, relay="wss://relay.getalby.com/v1"):
    return f"nostr+walletconnect://{walletKey.public_key.hex()}?relay={relay}&secret={clientKey.hex()}"

def connectedClient(reply, failPublish=0, responseTimeout=0.5):
    ctx = makeContext()
    walletKey = PrivateKey()
    clientKey = PrivateKey()
    relay = {}
    def poolFactory(c, urls):
        relay["pool"] = WalletRelay(c, urls, walletKey, reply, failPublish)
        return relay["pool"]
    client = nwc.NWCClient(ctx, makeNwcUrl(walletKey, clientKey), poolFactory=poolFactory, responseTimeout=responseTimeout)
    client.connect()
    return client, relay["pool"], ctx

def test_parse_nwc_url():
    walletKey = PrivateKey()
    clientKey = PrivateKey()
    connection = nwc.parseNwcUrl(makeNwcUrl(walletKey, clientKey))
    assert connection.walletPubkey == walletKey.public_key.hex()
    assert connection.relayUrl == "wss://relay.getalby.com/v1"
    assert connection.secret == clientKey.hex()

@pytest.mark.parametrize("url", [
    "https://" + "ab" * 32 + "?relay=wss://r&secret=" + "cd" * 32,
    "nostr+walletconnect://" + "ab" * 32 + "?secret=" + "cd" * 32,
    "nostr+walletconnect://" + "ab" * 32 + "?relay=wss://r",
    "nostr+walletconnect://" + "ab" * 32 + "?relay=wss://r&secret=nothex",
    "nostr+walletconnect://short?relay=wss://r&secret=" + "cd" * 32,
])
def test_parse_invalid_nwc_url(url):
    with pytest.raises(ConfigError):
        nwc.parseNwcUrl(url)

def test_decode_balance():
    assert nwc.decodeGetBalance({"balance": 21000}) == nwc.GetBalanceResult(21000)
    with pytest.raises(WalletError) as excinfo:
        nwc.decodeGetBalance({"balance": "lots"})
    assert excinfo.value.code == "INVALID_RESPONSE"

def test_pay_invoice():
    reply = lambda request: {"result_type": "pay_invoice", "result": {"preimage": "ff" * 32, "fees_paid": 12}}
    client, relay, ctx = connectedClient(reply)
    result = client.payInvoice("lnbc30n1invoice", ctx.deadline(5))
    assert result == nwc.PayInvoiceResult("ff" * 32, 12)
    assert relay.requests == [{"method": "pay_invoice", "params": {"invoice": "lnbc30n1invoice"}}]
    request = relay.published[0]
    assert request.kind == nwc.KIND_WALLET_REQUEST
    assert ["p", client.connection.walletPubkey] in request.tags
    assert relay.subscriptions == {}

def test_get_balance():
    client, relay, ctx = connectedClient(lambda request: {"result_type": "get_balance", "result": {"balance": 21000}})
    assert client.getBalance(ctx.deadline(5)).balanceMillisats == 21000
    assert relay.requests[0]["method"] == "get_balance"

def test_wallet_error_is_surfaced():
    reply = lambda request: {"result_type": "pay_invoice", "error": {"code": "INSUFFICIENT_BALANCE", "message": "not enough sats"}}
    client, _, ctx = connectedClient(reply)
    with pytest.raises(WalletError) as excinfo:
        client.payInvoice("lnbc1", ctx.deadline(5))
    assert excinfo.value.code == "INSUFFICIENT_BALANCE"
    assert excinfo.value.message == "not enough sats"

def test_silent_wallet_times_out():
    client, relay, ctx = connectedClient(lambda request: None, responseTimeout=0.3)
    with pytest.raises(ResponseTimeout):
        client.payInvoice("lnbc1", ctx.deadline(5))
    assert relay.subscriptions == {}

def test_publish_retries_after_closed_connection():
    reply = lambda request: {"result": {"balance": 1000}}
    client, relay, ctx = connectedClient(reply, failPublish=2)
    assert client.getBalance(ctx.deadline(10)).balanceMillisats == 1000
    assert relay.reconnects == 2
    assert len(relay.published) == 1

def test_publish_gives_up_after_three_attempts():
    client, relay, ctx = connectedClient(lambda request: {"result": {}}, failPublish=3)
    with pytest.raises(RelayClosedError):
        client.getBalance(ctx.deadline(10))
    assert relay.reconnects == 2
    assert relay.published == []

def test_request_without_connection():
    ctx = makeContext()
    client = nwc.NWCClient(ctx, makeNwcUrl(PrivateKey(), PrivateKey()), poolFactory=FakePool)
    with pytest.raises(RelayClosedError):
        client.payInvoice("lnbc1", ctx.deadline(1))
    client.connect()
    client.close()
    assert client.pool is None

def test_pay_result_with_unreadable_details_still_counts_as_paid():
    assert nwc.decodePayInvoice({"preimage": "ff" * 32, "fees_paid": "12"}) == nwc.PayInvoiceResult("ff" * 32, 0)
    assert nwc.decodePayInvoice(["not", "an", "object"]) == nwc.PayInvoiceResult("", 0)
    assert nwc.decodePayInvoice(None) == nwc.PayInvoiceResult("", 0)

def test_pay_invoice_with_malformed_result():
    client, _, ctx = connectedClient(lambda request: {"result_type": "pay_invoice", "result": "done"})
    assert client.payInvoice("lnbc1", ctx.deadline(5)) == nwc.PayInvoiceResult("", 0)

def test_response_window_starts_after_publish(monkeypatch):
    monkeypatch.setattr(nwc, "_publishRetryPause", 0.4)
    reply = lambda request: {"result": {"balance": 7}}
    client, relay, ctx = connectedClient(reply, failPublish=2, responseTimeout=0.3)
    # the retries alone outlast the response window
    assert client.getBalance(ctx.deadline(10)).balanceMillisats == 7
    assert relay.reconnects == 2
