"""
Error taxonomy for the inference bridge.

Every failure the bridge reports is a BridgeError subclass carrying a ``kind``
string, so callers can branch on the category without importing each class.
Each error also derives from the closest built-in exception type.

Load-time errors (ModelLoadError subclasses) are terminal for a Bridge
instance. All other errors are per-call and leave the Bridge usable.
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""

    kind: str = "BridgeError"


class ModelLoadError(BridgeError):
    """Base class for errors raised while loading a model artifact."""

    kind = "ModelLoadError"

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class ModelNotFoundError(ModelLoadError, FileNotFoundError):
    """The model path does not resolve to a file."""

    kind = "ModelNotFound"


class ModelFormatInvalidError(ModelLoadError, ValueError):
    """The container header, metadata or tensors failed validation."""

    kind = "ModelFormatInvalid"


class ModelIncompatibleError(ModelLoadError, ValueError):
    """The declared architecture is not supported by this build."""

    kind = "ModelIncompatible"


class ResourceExhaustedError(ModelLoadError, MemoryError):
    """Not enough memory to stage the model parameters."""

    kind = "ResourceExhausted"


class ModelNotLoadedError(BridgeError, RuntimeError):
    """An operation was attempted on a bridge without a loaded model."""

    kind = "ModelNotLoaded"


class EmbeddingDimensionMismatchError(BridgeError, ValueError):
    """An embedding vector length differs from the model's expected dimension."""

    kind = "EmbeddingDimensionMismatch"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding length {actual} does not match the model's "
            f"expected embedding dimension {expected}"
        )
        self.expected = expected
        self.actual = actual


class EmptyInputError(BridgeError, ValueError):
    """Generation was requested with no prompt and nothing to condition on."""

    kind = "EmptyInput"


class ContextFullError(BridgeError, RuntimeError):
    """The context is at its maximum length and the overflow policy rejects input."""

    kind = "ContextFull"


class ContextBusyError(BridgeError, RuntimeError):
    """The context is held by another call and could not be acquired in time."""

    kind = "ContextBusy"


class DecodeFailureError(BridgeError, RuntimeError):
    """The model failed while decoding.

    Attributes:
        partial_output: Text generated before the failure.
    """

    kind = "DecodeFailure"

    def __init__(self, message: str, partial_output: str = "") -> None:
        super().__init__(message)
        self.partial_output = partial_output
