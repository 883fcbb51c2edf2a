from procura.runtime.composition import (
    ProcuraRuntime,
    create_gateway,
    create_mailer,
    create_runtime,
)

__all__ = [
    "ProcuraRuntime",
    "create_gateway",
    "create_mailer",
    "create_runtime",
]
