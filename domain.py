import math
from collections import deque
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# --- Permissive coercion ---

def to_number(value: Any) -> float:
    """
    WHY: Входные данные не валидируются строго.
    Нечисловое значение превращается в NaN и дальше "течет" через арифметику
    (сравнения с NaN всегда False, поэтому NaN не дает ни refill, ни reason).
    """
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def to_timestamp(value: Any) -> Optional[int]:
    """Timestamp в миллисекундах. 0 / None / мусор = "не задан" (подставится clock)"""
    if not value:
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(ts) or math.isinf(ts):
        return None
    return int(ts)


def price_key(price: float) -> str:
    """
    Строковый ключ уровня цены.

    Формат как у числа в JS: 42000.0 -> "42000", 42000.5 -> "42000.5", NaN -> "NaN",
    1e-07 -> "1e-7", 1.5e-05 -> "0.000015".
    Близкие, но не равные float дают РАЗНЫЕ ключи (известное ограничение).
    """
    if math.isnan(price):
        return "NaN"
    if math.isinf(price):
        return "Infinity" if price > 0 else "-Infinity"
    if price.is_integer() and abs(price) < 1e21:
        return str(int(price))

    text = repr(price)
    if "e" not in text:
        return text
    mantissa, exponent = text.split("e")
    exp = int(exponent)
    # JS переходит на экспоненту только при < 1e-6 или >= 1e21
    if -7 < exp < 21:
        return format(Decimal(text), "f")
    return f"{mantissa}e{'+' if exp > 0 else '-'}{abs(exp)}"


# --- Value Objects ---

class ChangeType(str, Enum):
    INIT = "init"           # Первое наблюдение уровня в стакане
    INCREASE = "increase"
    DECREASE = "decrease"


class TradeEvent(BaseModel):
    """Сделка (принт). side - строка биржи: 'buy' / 'sell' / что угодно"""
    price: float = math.nan
    size: float = math.nan
    side: Optional[str] = None
    timestamp: Optional[int] = Field(default=None, validation_alias=AliasChoices("timestamp", "ts"))

    @field_validator("price", "size", mode="before")
    @classmethod
    def _coerce_number(cls, v):
        return to_number(v)

    @field_validator("side", mode="before")
    @classmethod
    def _coerce_side(cls, v):
        return None if v is None else str(v)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, v):
        return to_timestamp(v)


class BookSnapshot(BaseModel):
    """Полный снапшот стакана: [(price, size), ...] в порядке биржи (без сортировки)"""
    bids: List[Tuple[float, float]] = Field(default_factory=list)
    asks: List[Tuple[float, float]] = Field(default_factory=list)
    timestamp: Optional[int] = Field(default=None, validation_alias=AliasChoices("timestamp", "ts"))

    @field_validator("bids", "asks", mode="before")
    @classmethod
    def _coerce_side(cls, v):
        # WHY: Отсутствующая сторона = пустая. OKX шлет ["price", "size", "0", "orders"] - берем первые два
        if not v:
            return []
        levels = []
        for entry in v:
            if not isinstance(entry, (list, tuple)):
                continue
            price = to_number(entry[0]) if len(entry) > 0 else math.nan
            size = to_number(entry[1]) if len(entry) > 1 else math.nan
            levels.append((price, size))
        return levels

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, v):
        return to_timestamp(v)


class LevelRecord(BaseModel):
    """
    Состояние одного ценового уровня.

    last_size / last_change_type - ТОЛЬКО из снапшотов стакана.
    trade_volume / trades_count / avg_trade_size - ТОЛЬКО из сделок.
    """
    last_size: Optional[float] = None
    last_change_type: Optional[ChangeType] = None
    refill_count: int = 0
    trade_volume: float = 0.0
    trades_count: int = 0
    avg_trade_size: float = 0.0
    last_update: int = 0

    def observe_size(self, size: float, ts: int, refill_window_ms: int) -> bool:
        """
        Применяет видимый объем из снапшота.

        Refill = рост объема сразу после падения (внутри refill_window_ms).
        Равный объем НЕ меняет направление.

        Returns:
            True если зафиксирован refill
        """
        refilled = False
        if self.last_size is None:
            self.last_change_type = ChangeType.INIT
        else:
            if (size > self.last_size
                    and self.last_change_type == ChangeType.DECREASE
                    and (ts - self.last_update) < refill_window_ms):
                self.refill_count += 1
                refilled = True

            if size < self.last_size:
                self.last_change_type = ChangeType.DECREASE
            elif size > self.last_size:
                self.last_change_type = ChangeType.INCREASE

        self.last_size = size
        self.last_update = ts
        return refilled

    def record_trade(self, size: float, ts: int):
        """Накопление объема сделок + инкрементальное среднее"""
        self.trade_volume += size
        self.trades_count += 1
        self.avg_trade_size = (self.avg_trade_size * (self.trades_count - 1) + size) / self.trades_count
        self.last_update = ts


class InstrumentContext(BaseModel):
    """
    Состояние одного инструмента.
    Создается лениво при первом событии, живет до reset().
    """
    inst_id: str
    last_book: Optional[BookSnapshot] = None

    # Ключ: price_key(price). Уровни не удаляются (только пропускаются при скоринге если устарели)
    level_state: Dict[str, LevelRecord] = Field(default_factory=dict)

    # Скользящие окна (по времени события)
    recent_trades: deque = Field(default_factory=deque)       # TradeEvent с заполненным timestamp
    recent_books: deque = Field(default_factory=deque)        # (ts, BookSnapshot) - для диагностики
    last_price_window: deque = Field(default_factory=deque)   # (ts, price)

    external_onchain_score: float = 0.0
    external_oi_score: float = 0.0

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def get_level(self, price: float) -> LevelRecord:
        key = price_key(price)
        level = self.level_state.get(key)
        if level is None:
            level = LevelRecord()
            self.level_state[key] = level
        return level

    def apply_trade(self, trade: TradeEvent, ts: int, trade_window_ms: int) -> LevelRecord:
        """
        Trade Ingestor: окно сделок + агрегаты уровня.
        НЕ трогает last_size / last_change_type.
        """
        self.recent_trades.append(trade.model_copy(update={"timestamp": ts}))
        self.last_price_window.append((ts, trade.price))

        since = ts - trade_window_ms
        while self.recent_trades and self.recent_trades[0].timestamp < since:
            self.recent_trades.popleft()
        while self.last_price_window and self.last_price_window[0][0] < since:
            self.last_price_window.popleft()

        level = self.get_level(trade.price)
        level.record_trade(trade.size, ts)
        return level

    def apply_book_snapshot(self, snapshot: BookSnapshot, ts: int, refill_window_ms: int) -> int:
        """
        Book Delta Processor: детекция increase / decrease / refill по каждому уровню.

        Returns:
            Количество refill'ов в этом снапшоте
        """
        self.recent_books.append((ts, snapshot))
        since = ts - refill_window_ms * 2
        while self.recent_books and self.recent_books[0][0] < since:
            self.recent_books.popleft()

        refills = 0
        for side in (snapshot.bids, snapshot.asks):
            for price, size in side:
                if self.get_level(price).observe_size(size, ts, refill_window_ms):
                    refills += 1

        self.last_book = snapshot
        return refills

    def set_external(self, onchain: Any = 0, oi: Any = 0):
        """Внешние сигналы (on-chain, open interest) в диапазоне [0, 1]"""
        self.external_onchain_score = _clamp_unit(onchain)
        self.external_oi_score = _clamp_unit(oi)


def _clamp_unit(value: Any) -> float:
    # WHY: NaN хранится как 0, иначе композитный score выйдет за [0, 1]
    number = to_number(value)
    if math.isnan(number):
        return 0.0
    return max(0.0, min(1.0, number))


# --- Signal ---

class IcebergReason(BaseModel):
    """Уровень, давший вклад в iceberg score (для объяснимости)"""
    price: float
    refill_count: int
    trade_volume: float
    avg_trade_size: float
    score: float


class SignalBreakdown(BaseModel):
    iceberg: float = 0.0
    absorption: float = 0.0
    footprint: float = 0.0
    onchain: float = 0.0
    oi: float = 0.0


class HiddenLiquiditySignal(BaseModel):
    """Композитный сигнал по инструменту. Не хранится - пересчитывается по запросу"""
    coin: str
    score: float
    breakdown: SignalBreakdown
    iceberg_reasons: List[IcebergReason] = Field(default_factory=list)
    last_updated: int
