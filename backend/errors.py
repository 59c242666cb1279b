"""Error taxonomy for the digest pipeline."""


class DigestError(Exception):
    """Base class for digest pipeline errors."""


class GenerationFailed(DigestError):
    """The text service returned no usable content or raised."""


class DispatchError(DigestError):
    """Push delivery did not produce an ok ticket."""


class InvalidToken(DispatchError):
    """Push token is not in a format the provider accepts."""


class DeliveryFailed(DispatchError):
    """Provider rejected the message or the request failed."""


class PersistenceFailed(DigestError):
    """Writing the store to durable storage failed."""
