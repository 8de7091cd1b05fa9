from pydantic import BaseModel, Field
from datetime import datetime

from domain import HiddenLiquiditySignal

# Имя события алерта (слушатели подписываются по нему)
HIDDEN_LIQUIDITY_ALERT = "hiddenLiquidity:alert"


# Базовый класс события
class SystemEvent(BaseModel):
    event_time: datetime = Field(default_factory=datetime.now)


class HiddenLiquidityAlertEvent(SystemEvent):
    event_name: str = HIDDEN_LIQUIDITY_ALERT
    signal: HiddenLiquiditySignal

    @property
    def symbol(self) -> str:
        return self.signal.coin
