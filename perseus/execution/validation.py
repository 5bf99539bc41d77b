"""Trade signal validation at the execution boundary."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from perseus.errors import SignalValidationError
from perseus.types import TradeSignal


class SignalParamsModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entry_price: float = Field(..., gt=0)
    position_size: float = Field(..., gt=0)
    quantity: Optional[float] = Field(None, gt=0)
    stop_loss: Optional[float] = Field(None, gt=0)
    take_profit: Optional[float] = Field(None, gt=0)
    order_type: Optional[Literal["MARKET", "LIMIT", "SMART"]] = None
    time_in_force: Optional[Literal["GTC", "IOC", "FOK"]] = None
    expire_after: Optional[int] = Field(None, ge=0)
    slippage_tolerance: Optional[float] = Field(None, ge=0, le=0.1)


class TradeSignalModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: Literal["BUY", "SELL"]
    symbol: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=1)
    strategy_id: str = Field(..., min_length=1)
    params: SignalParamsModel


def validate_signal(signal: Union[TradeSignal, Mapping[str, Any]]) -> TradeSignal:
    """Validate an executable signal.

    Raises:
        SignalValidationError: listing every failing field
    """
    payload = asdict(signal) if isinstance(signal, TradeSignal) else dict(signal)
    try:
        TradeSignalModel.model_validate(payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise SignalValidationError(problems) from exc
    return signal if isinstance(signal, TradeSignal) else TradeSignal.from_dict(payload)
