#!/usr/bin/env python3

class ZapBotError(Exception):
    pass

class ConfigError(ZapBotError):
    pass

# Session class: the call may succeed against a fresh session
class SessionError(ZapBotError):
    pass

class SessionCanceled(SessionError):
    def __init__(self, message="canceled by shutdown"):
        super().__init__(message)

class SessionTimeout(SessionError):
    def __init__(self, message="deadline exceeded"):
        super().__init__(message)

class ResponseTimeout(SessionTimeout):
    def __init__(self, message="timeout waiting for wallet response"):
        super().__init__(message)

class SessionClosed(SessionError):
    def __init__(self, message="session was closed"):
        super().__init__(message)

class RelayClosedError(ZapBotError):
    pass

class ConflictError(ZapBotError):
    def __init__(self, eventId):
        self.eventId = eventId
        super().__init__(f"event {eventId} is already recorded in the ledger")

# Protocol class: the remote side said no, a fresh session will not help
class ProtocolError(ZapBotError):
    pass

class SignerRejected(ProtocolError):
    pass

class NoPaymentAddress(ProtocolError):
    pass

class InvalidEndpoint(ProtocolError):
    pass

class EndpointUnreachable(ProtocolError):
    pass

class AmountOutOfBounds(ProtocolError):
    def __init__(self, boundMillisats, requestedMillisats):
        self.boundMillisats = boundMillisats
        self.requestedMillisats = requestedMillisats
        if requestedMillisats < boundMillisats:
            message = f"amount {requestedMillisats} msat is below the minimum of {boundMillisats} msat"
        else:
            message = f"amount {requestedMillisats} msat is above the maximum of {boundMillisats} msat"
        super().__init__(message)

class RemoteRejected(ProtocolError):
    def __init__(self, reason):
        self.reason = reason
        super().__init__(f"payment endpoint returned error: {reason}")

class EmptyInvoice(ProtocolError):
    def __init__(self, message="no invoice in response"):
        super().__init__(message)

class WalletError(ProtocolError):
    def __init__(self, code, message):
        self.code = code
        self.message = message
        super().__init__(f"wallet error {code}: {message}")

class NoRelayAccepted(ProtocolError):
    def __init__(self, message="failed to publish to any relay"):
        super().__init__(message)

# the invoice went to the wallet and the outcome could not be read
class PaymentUnknown(ZapBotError):
    pass
