from perseus.execution.interfaces import ExchangeClient, OrderFill, OrderRequest, missing_client_methods
from perseus.execution.simulated import SimulatedExchangeClient, SimulatedPosition
from perseus.execution.validation import validate_signal

__all__ = [
    "ExchangeClient",
    "OrderFill",
    "OrderRequest",
    "SimulatedExchangeClient",
    "SimulatedPosition",
    "missing_client_methods",
    "validate_signal",
]
