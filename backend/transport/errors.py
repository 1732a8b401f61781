"""Error taxonomy for the Bluetooth transfer stack."""


class BluetoothError(Exception):
    """Base class for all transport and protocol errors."""


class PermissionDenied(BluetoothError):
    """A runtime capability is missing; the operation is skipped."""


class RadioUnavailable(BluetoothError):
    """No adapter is present, or it is powered off."""


class ConnectionAttemptFailed(BluetoothError):
    """A single connection strategy failed. The next one is tried."""


class ConnectionExhausted(BluetoothError):
    """Every connection strategy failed."""


class StreamIOError(BluetoothError):
    """The duplex stream failed or was closed mid-transfer."""


class ProtocolViolation(BluetoothError):
    """The peer sent something the framed protocol cannot parse."""
