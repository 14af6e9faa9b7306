#!/usr/bin/env python3
from nostr.event import Event
import botlnurl as lnurl
from boterrors import PaymentUnknown, ZapBotError

KIND_ZAP_REQUEST = 9734

_maxRelayHints = 10

class Zapper:
    """One settlement attempt: endpoint, zap request, invoice, payment."""

    def __init__(self, ctx, signer, negotiator, wallet, relays):
        self.ctx = ctx
        self.logger = ctx.logger
        self.signer = signer
        self.negotiator = negotiator
        self.wallet = wallet
        self.relays = list(relays)

    def makeZapRequest(self, eventId, recipientPubkey, amountSats, comment, endpoint, deadline):
        zapperPubkey = self.signer.getPublicKey(deadline)
        amountMillisatoshi = int(round(amountSats * 1000))
        relaysTagList = ["relays"]
        relaysTagList.extend(self.relays[:_maxRelayHints])
        zapTags = []
        zapTags.append(["e", eventId])
        zapTags.append(["p", recipientPubkey])
        zapTags.append(["amount", str(amountMillisatoshi)])
        zapTags.append(relaysTagList)
        zapTags.append(["lnurl", lnurl.endpointToLnurl(endpoint)])
        zapEvent = Event(content=comment or "", public_key=zapperPubkey, kind=KIND_ZAP_REQUEST, tags=zapTags)
        return self.signer.signEvent(zapEvent, deadline)

    def zapNote(self, eventId, authorId, amountSats, comment, deadline):
        self.logger.info(f"Zapping {amountSats} sats to event {eventId}")
        endpoint = self.negotiator.resolvePaymentEndpoint(authorId, deadline)
        zapRequest = self.makeZapRequest(eventId, authorId, amountSats, comment, endpoint, deadline)
        invoice = self.negotiator.negotiateInvoice(endpoint, amountSats, zapRequest, deadline=deadline)
        deadline.check()
        try:
            paid = self.wallet.payInvoice(invoice, deadline)
        except (ZapBotError, OSError):
            raise
        except Exception as err:
            raise PaymentUnknown(f"wallet failed after the invoice for event {eventId} was sent: {err!r}") from err
        self.logger.info(f"Zap successful for event {eventId}")
        return paid
