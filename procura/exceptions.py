class ProcuraError(Exception):
    """Base error for the Procura domain."""
    pass

class RunNotFound(ProcuraError):
    """Raised when a Run cannot be located."""
    pass

class CounterpartyNotFound(ProcuraError):
    """Raised when a Counterparty cannot be located."""
    pass

class InfrastructureError(ProcuraError):
    """Wrapped technical error from persistence or the event stream."""
    pass

class CallGatewayError(ProcuraError):
    """Raised when the voice provider rejects or fails an outbound call request."""
    pass

class MailDeliveryError(ProcuraError):
    """Raised when the confirmation email cannot be sent."""
    pass

class ModelProviderError(ProcuraError):
    """Base error for reasoning service failures."""
    pass

class ModelTimeoutError(ModelProviderError):
    """Raised when the reasoning service fails to respond within the timeout period."""
    pass

class ModelConnectionError(ModelProviderError):
    """Raised when the reasoning service (e.g., Ollama) is unreachable or unconfigured."""
    pass
