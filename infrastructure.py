import json
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Sequence

from colorama import Fore, Style

from domain import HiddenLiquiditySignal
from events import HiddenLiquidityAlertEvent

if TYPE_CHECKING:
    from services import HiddenLiquidityDetector

logger = logging.getLogger(__name__)


# --- Clock ---

class SystemClock:
    """Текущее время в миллисекундах (epoch)"""

    def __call__(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """
    Управляемые часы для тестов и симуляций.
    Время меняется только через set() / advance().
    """

    def __init__(self, start_ms: int = 0):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def set(self, now_ms: int):
        self.now_ms = now_ms

    def advance(self, delta_ms: int) -> int:
        self.now_ms += delta_ms
        return self.now_ms


# --- Notification sinks ---

class NotificationSink(ABC):
    @abstractmethod
    def notify(self, event_name: str, signal: HiddenLiquiditySignal) -> None:
        """Доставка алерта. Исключения ловит вызывающий (Alert Emitter)"""
        pass


class LoggingNotificationSink(NotificationSink):
    """Фолбэк: алерт только в лог"""

    def __init__(self, level: int = logging.WARNING):
        self.level = level

    def notify(self, event_name: str, signal: HiddenLiquiditySignal) -> None:
        logger.log(
            self.level,
            f"{event_name} {signal.coin} score={signal.score:.3f} "
            f"breakdown={signal.breakdown.model_dump()}"
        )


class ConsoleNotificationSink(NotificationSink):
    """Красивый вывод алерта в консоль"""

    def notify(self, event_name: str, signal: HiddenLiquiditySignal) -> None:
        b = signal.breakdown
        color = Fore.RED if signal.score >= 0.6 else Fore.YELLOW
        print(f"\n🧊 {color}HIDDEN LIQUIDITY ALERT{Style.RESET_ALL} {signal.coin}")
        print(f"   🎯 Score: {color}{signal.score:.3f}{Style.RESET_ALL}")
        print(f"   🧱 Iceberg: {b.iceberg:.3f} | 🧽 Absorption: {b.absorption:.3f} | 👣 Footprint: {b.footprint:.3f}")
        print(f"   ⛓️  On-chain: {b.onchain:.2f} | 📈 OI: {b.oi:.2f}")
        for reason in signal.iceberg_reasons:
            print(f"   💰 {reason.price:,.2f}: refills={reason.refill_count} "
                  f"vol={reason.trade_volume:.4f} avg={reason.avg_trade_size:.4f} score={reason.score:.3f}")
        print("-" * 50)


class EventDispatcher(NotificationSink):
    """
    In-process pub/sub по имени события.

    Слушатель получает HiddenLiquidityAlertEvent.
    Упавший слушатель логируется и не мешает остальным.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[HiddenLiquidityAlertEvent], Any]]] = defaultdict(list)

    def subscribe(self, event_name: str, listener: Callable[[HiddenLiquidityAlertEvent], Any]):
        self._listeners[event_name].append(listener)

    def unsubscribe(self, event_name: str, listener: Callable[[HiddenLiquidityAlertEvent], Any]):
        listeners = self._listeners.get(event_name, [])
        if listener in listeners:
            listeners.remove(listener)

    def notify(self, event_name: str, signal: HiddenLiquiditySignal) -> None:
        listeners = list(self._listeners.get(event_name, []))
        if not listeners:
            logger.info(f"{event_name}: no listeners for {signal.coin}")
            return

        event = HiddenLiquidityAlertEvent(event_name=event_name, signal=signal)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener for {event_name} failed: {e}")


# --- OKX adapter ---

DEFAULT_OKX_CHANNELS = ("books5", "tickers", "trades")


class OkxMessageRouter:
    """
    Нормализует push-сообщения OKX WebSocket и кормит детектор.

    Транспорт (подключение, подписка) - снаружи: роутер только отдает
    аргументы подписки и разбирает входящие сообщения.
    """

    def __init__(
        self,
        detector: "HiddenLiquidityDetector",
        instruments: Sequence[str],
        top_n: int = 8,
        channels: Sequence[str] = DEFAULT_OKX_CHANNELS
    ):
        self.detector = detector
        self.channels = tuple(channels)
        # WHY: Следим только за топ-N инструментами (как пришли из marketState)
        self.instruments = list(instruments)[:top_n]
        self.attached = True
        logger.info(f"[HL] Attached detector for {len(self.instruments)} coins (top {top_n})")

    def subscription_args(self) -> List[Dict[str, str]]:
        """Аргументы для {"op": "subscribe", "args": [...]}"""
        return [
            {"channel": channel, "instId": inst_id}
            for inst_id in self.instruments
            for channel in self.channels
        ]

    def handle_message(self, message: Dict[str, Any], inst_id: Optional[str] = None) -> int:
        """
        Разбирает одно сообщение: {"arg": {"channel", "instId"}, "data": [...]}

        Сообщения по инструментам вне self.instruments отбрасываются
        (явный inst_id обходит фильтр). После detach() не кормит ничего.

        Returns:
            Сколько записей передано в детектор (0 при ошибке разбора)
        """
        fed = 0
        if not self.attached:
            return 0
        try:
            if inst_id is None:
                arg = message.get("arg") or {}
                inst_id = arg.get("instId")
                if inst_id not in self.instruments:
                    return 0
            if not inst_id:
                return 0

            data = message.get("data")
            if isinstance(data, list):
                entries = data
            elif data:
                entries = [data]
            else:
                entries = []

            for entry in entries:
                if entry.get("asks") or entry.get("bids") or entry.get("action"):
                    self.detector.feed_book(inst_id, {
                        "bids": entry.get("bids") or [],
                        "asks": entry.get("asks") or [],
                        "timestamp": entry.get("ts") or self.detector.clock(),
                    })
                    fed += 1
                elif entry.get("price") or entry.get("px") or entry.get("last") or entry.get("side"):
                    price = entry.get("price") or entry.get("px") or entry.get("last")
                    size = entry.get("size") or entry.get("sz") or entry.get("qty") or 0
                    self.detector.feed_trade(inst_id, {
                        "price": price,
                        "size": size,
                        "side": entry.get("side"),
                        "timestamp": entry.get("ts") or self.detector.clock(),
                    })
                    fed += 1
        except Exception as e:
            logger.error(f"[HL] parse err: {e}")
        return fed

    def detach(self):
        """Отписка: забываем инструменты и сбрасываем состояние детектора"""
        self.attached = False
        self.instruments = []
        self.detector.reset()


def iter_recorded_messages(path: str) -> Iterator[Dict[str, Any]]:
    """Читает записанный поток OKX (JSON lines). Битые строки пропускаются"""
    with Path(path).open(encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping line {line_no} of {path}: {e}")
