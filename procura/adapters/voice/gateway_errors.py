from __future__ import annotations

from procura.exceptions import CallGatewayError


class CallGatewayConfigError(CallGatewayError):
    pass


class CallGatewayRateLimitError(CallGatewayError):
    pass


class CallGatewayAuthError(CallGatewayError):
    pass


class CallGatewayTimeoutError(CallGatewayError):
    pass


class CallGatewayNetworkError(CallGatewayError):
    pass
