"""Domain-specific errors for stonectl."""


class StonectlError(Exception):
    """Base error for stonectl."""


class ConfigError(StonectlError):
    """Raised when the configuration file cannot be read."""


class ConfigValidationError(ConfigError):
    """Raised when a configuration file does not conform to schema or semantics."""


class RegistryError(StonectlError):
    """Raised when the registered-device store cannot be loaded or saved."""


class PairingError(StonectlError):
    """Raised when the pairing flow is driven from an invalid stage or candidate."""


class PayloadError(StonectlError):
    """Raised when a GAIA vendor, command or payload value cannot be parsed."""


class BackendError(StonectlError):
    """Base backend error."""


class BackendUnavailableError(BackendError):
    """Raised when the Bluetooth tooling required by a backend is missing."""


class TransportError(BackendError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on RFCOMM connect failures."""


class TransportSendError(TransportError):
    """Raised when payload sending fails."""


class TransportTimeoutError(TransportError):
    """Raised when an RFCOMM operation times out."""
