from typing import Any

from ape.exceptions import ApeException


class BlockLatencyException(ApeException):
    """Base Exception for any blocklatency runtime faults."""


class ConfigurationError(BlockLatencyException):
    def __init__(self, *errors: Exception | str):
        if len(errors) == 1 and isinstance(errors[0], str):
            super().__init__(errors[0])
        elif error_str := "\n".join(str(e) for e in errors):
            super().__init__(f"Invalid configuration:\n{error_str}")
        else:
            super().__init__("Invalid configuration. See logs for details.")


class NoWebsocketAvailableError(ConfigurationError):
    def __init__(self):
        super().__init__(
            "Attempted to use a websocket block feed without a websocket endpoint configured."
        )


class TransientNetworkError(BlockLatencyException):
    """A network fault that the owning loop retries on its next cycle."""


class SubscriptionError(TransientNetworkError):
    def __init__(self, response: Any):
        super().__init__(f"Subscription request failed: {response}")


class ParameterFetchError(BlockLatencyException):
    def __init__(self, kind: Any, error: Exception):
        self.kind = kind
        super().__init__(f"Failed to fetch {kind}: {error}")


class SubmissionError(BlockLatencyException):
    """Transaction was rejected by the node, or could not be sent."""


class Halt(BlockLatencyException):
    def __init__(self):
        super().__init__("Engine halted")
