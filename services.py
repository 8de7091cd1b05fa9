import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Union

from analyzers import HiddenLiquidityAnalyzer
from config import DetectorConfig, get_config
from domain import BookSnapshot, HiddenLiquiditySignal, InstrumentContext, TradeEvent
from events import HIDDEN_LIQUIDITY_ALERT
from infrastructure import NotificationSink, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_INSTRUMENT = "BTC-USDT-SWAP"


@dataclass
class DetectorState:
    """Все изменяемое состояние детектора (никаких глобальных словарей)"""
    instruments: Dict[str, InstrumentContext] = field(default_factory=dict)
    # WHY: Время последнего алерта переживает reset() инструмента (mute не обнуляется)
    last_emitted: Dict[str, int] = field(default_factory=dict)


class HiddenLiquidityDetector:
    """
    Детектор скрытой ликвидности (iceberg / absorption).

    Поток данных:
        WebSocket -> feed_trade / feed_book -> InstrumentContext
                  -> HiddenLiquidityAnalyzer (score) -> Alert Emitter -> sink

    Все вызовы синхронные, порядок событий = порядок вызовов.
    Каждый экземпляр независим.
    """

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        sink: Optional[NotificationSink] = None,
        clock: Optional[Callable[[], int]] = None
    ):
        self.config = config or get_config()
        self.sink = sink
        self.clock = clock or SystemClock()
        self.analyzer = HiddenLiquidityAnalyzer(self.config)
        self.state = DetectorState()

    # --- Ingestion ---

    def _ensure_instrument(self, inst_id: str) -> InstrumentContext:
        context = self.state.instruments.get(inst_id)
        if context is None:
            context = InstrumentContext(inst_id=inst_id)
            self.state.instruments[inst_id] = context
        return context

    def feed_trade(self, inst_id: str, trade: Union[TradeEvent, Mapping[str, Any]]):
        """trade: {price, size, side, timestamp?}"""
        if not isinstance(trade, TradeEvent):
            trade = TradeEvent.model_validate(dict(trade))

        context = self._ensure_instrument(inst_id)
        ts = trade.timestamp or self.clock()
        context.apply_trade(trade, ts, self.config.trade_window_ms)

        self._maybe_emit(inst_id)

    def feed_book(self, inst_id: str, snapshot: Union[BookSnapshot, Mapping[str, Any], None]):
        """snapshot: {bids: [[price, size], ...], asks: [...], timestamp?}"""
        if not isinstance(snapshot, BookSnapshot):
            snapshot = BookSnapshot.model_validate(dict(snapshot or {}))

        context = self._ensure_instrument(inst_id)
        ts = snapshot.timestamp or self.clock()
        refills = context.apply_book_snapshot(snapshot, ts, self.config.refill_window_ms)
        if refills:
            logger.debug(f"[HL] {inst_id}: {refills} refill(s) @ {ts}")

        self._maybe_emit(inst_id)

    def feed_external(self, inst_id: str, external: Optional[Mapping[str, Any]] = None):
        """
        Внешние сигналы: {"onchain": 0..1, "oi": 0..1}.
        Отсутствующий ключ = 0 (пара заменяется целиком).
        """
        external = external or {}
        context = self._ensure_instrument(inst_id)
        context.set_external(external.get("onchain", 0), external.get("oi", 0))

        self._maybe_emit(inst_id)

    # --- Signal ---

    def get_signal(self, inst_id: str) -> Optional[HiddenLiquiditySignal]:
        """None если по инструменту не было ни одного события"""
        context = self.state.instruments.get(inst_id)
        if context is None:
            return None
        return self.analyzer.compute_signal(context, self.clock())

    def export_state(self) -> Dict[str, HiddenLiquiditySignal]:
        return {inst_id: self.get_signal(inst_id) for inst_id in list(self.state.instruments)}

    def reset(self, inst_id: Optional[str] = None):
        if inst_id:
            self.state.instruments.pop(inst_id, None)
        else:
            self.state.instruments.clear()

    # --- Alert Emitter ---

    def _maybe_emit(self, inst_id: str):
        """
        Алерт не чаще одного раза в alert_mute_ms на инструмент.

        WHY: Ошибка алертинга (или расчета) НЕ должна ронять ингест.
        """
        try:
            signal = self.get_signal(inst_id)
            if signal is None:
                return

            now = self.clock()
            last_ts = self.state.last_emitted.get(inst_id)
            muted = last_ts is not None and (now - last_ts) <= self.config.alert_mute_ms

            if signal.score >= self.config.alert_threshold and not muted:
                self.state.last_emitted[inst_id] = now
                logger.info(f"[HL] alert {inst_id} score={signal.score:.3f} breakdown={signal.breakdown.model_dump()}")
                if self.sink is not None:
                    self.sink.notify(HIDDEN_LIQUIDITY_ALERT, signal)
        except Exception as e:
            logger.warning(f"[HL] alert emit failed for {inst_id}: {e}")

    # --- Simulation ---

    def run_sample_simulation(self, inst_id: str = DEFAULT_INSTRUMENT) -> HiddenLiquiditySignal:
        """
        Скриптовый сценарий для ручной проверки:
        стакан -> 8 x (мелкая продажа в 42000 + рост бида 42000) -> внешние сигналы.
        """
        self.reset(inst_id)
        now = self.clock()

        self.feed_book(inst_id, {
            "bids": [[42000, 5], [41990, 10]],
            "asks": [[42010, 4], [42020, 8]],
            "timestamp": now
        })

        for i in range(8):
            self.feed_trade(inst_id, {"price": 42000, "size": 0.6, "side": "sell", "timestamp": now + i * 200})
            self.feed_book(inst_id, {
                "bids": [[42000, 5 + i], [41990, 10]],
                "asks": [[42010, 4], [42020, 8]],
                "timestamp": now + i * 300
            })

        self.feed_external(inst_id, {"onchain": 0.6, "oi": 0.4})
        return self.get_signal(inst_id)


def create_hidden_liquidity_detector(
    sink: Optional[NotificationSink] = None,
    clock: Optional[Callable[[], int]] = None,
    **options
) -> HiddenLiquidityDetector:
    """Фабрика: опции поверх DEFAULT_CONFIG (refill_window_ms=..., alert_threshold=...)"""
    return HiddenLiquidityDetector(config=get_config(**options), sink=sink, clock=clock)
