class RelayError(Exception):
    """Base class for protocol errors reported to a single peer."""

    code = "relay-error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_message(self) -> dict:
        return {"type": "error", "code": self.code, "message": self.message}


class SessionNotFound(RelayError):
    code = "session-not-found"


class PairingRejected(RelayError):
    code = "pairing-rejected"


class NotPaired(RelayError):
    code = "not-paired"


class OversizeFile(RelayError):
    code = "oversize-file"


class TransferInProgress(RelayError):
    code = "transfer-in-progress"


class TransferNotFound(RelayError):
    code = "transfer-not-found"


class InvalidMessage(RelayError):
    code = "invalid-message"


class SizeMismatchOnReassembly(RelayError):
    code = "size-mismatch"


class ChannelError(RelayError):
    code = "channel-error"


class PeerDisconnected(RelayError):
    code = "peer-disconnected"


class TransferCancelled(RelayError):
    code = "transfer-cancelled"


class StorageError(RelayError):
    code = "storage-error"
