"""
Segment Log Errors
Failure taxonomy for a single delivery attempt. Each error names the stage
it aborted so diagnostics can be grouped without parsing messages.
"""

from typing import Any


class DeliveryError(Exception):
    """A delivery attempt was abandoned."""

    stage = "delivery"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class IncompleteRecord(DeliveryError):
    stage = "record"


class MissingCredential(DeliveryError):
    stage = "credential"


class CredentialDecodeFailure(DeliveryError):
    stage = "credential_decode"


class MissingIdentityClaim(DeliveryError):
    stage = "identity_claim"


class ConnectFailure(DeliveryError):
    stage = "connect"


class TLSHandshakeFailure(DeliveryError):
    """Only fatal when the TLS fail-open policy is disabled."""

    stage = "tls_handshake"


class SendFailure(DeliveryError):
    stage = "send"


class KeepAliveFailure(DeliveryError):
    stage = "keepalive"
