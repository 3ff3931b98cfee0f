"""Gateway scripting and small helpers shared by the test modules."""
from extensions import db
from settlement.exceptions import GatewayUnavailable
from settlement.gateway import GatewayResult, GatewayStatus


BANK_DETAILS = {
    "bankName": "First Bank",
    "accountName": "Ada Obi",
    "accountNumber": "0123456789",
}


class FakeGateway:
    """Scripted stand-in for GatewayClient: reference -> GatewayResult or exception."""

    def __init__(self):
        self.responses = {}
        self.calls = []
        self.closed = 0

    def script(self, reference, result):
        self.responses[reference] = result

    def lookup(self, client_reference):
        self.calls.append(client_reference)
        response = self.responses.get(client_reference, GatewayResult.unknown())
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed += 1


def successful(provider_ref="LNC-REF-1"):
    return GatewayResult(status=GatewayStatus.SUCCESSFUL, provider_ref=provider_ref)


def processing():
    return GatewayResult(status=GatewayStatus.PROCESSING)


def failed(reason="Insufficient funds"):
    return GatewayResult(status=GatewayStatus.FAILED, failure_reason=reason)


def declined(reason="Declined by bank"):
    return GatewayResult(status=GatewayStatus.DECLINED, failure_reason=reason)


def unavailable():
    return GatewayUnavailable("connection reset")


def reload(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk)
