"""
Book Delta Processor: increase / decrease / refill по снапшотам стакана

Refill = рост объема на уровне, предыдущий переход которого был decrease,
и с последнего обновления уровня прошло < refill_window_ms.
"""
import pytest

from config import get_config
from domain import ChangeType
from infrastructure import ManualClock
from services import HiddenLiquidityDetector

T0 = 1_700_000_000_000
INST = "BTC-USDT-SWAP"


def book(bid_size, ts, price=100):
    return {"bids": [[price, bid_size]], "asks": [[101, 10]], "timestamp": ts}


class TestRefillDetection:

    @pytest.fixture
    def detector(self):
        return HiddenLiquidityDetector(clock=ManualClock(T0))

    def level(self, detector, key="100"):
        return detector.state.instruments[INST].level_state[key]

    def test_increase_after_decrease_within_window_is_refill(self, detector):
        detector.feed_book(INST, book(5, T0))
        detector.feed_book(INST, book(3, T0 + 1_000))
        detector.feed_book(INST, book(6, T0 + 2_000))

        lvl = self.level(detector)
        assert lvl.refill_count == 1
        assert lvl.last_change_type == ChangeType.INCREASE
        assert lvl.last_size == 6

    @pytest.mark.invariant
    @pytest.mark.parametrize("delta_ms, expected", [
        (1, 1),
        (29_999, 1),
        (30_000, 0),   # Граница окна не включается
        (45_000, 0),
    ])
    def test_refill_counts_only_inside_window(self, detector, delta_ms, expected):
        detector.feed_book(INST, book(5, T0 - 1_000))
        detector.feed_book(INST, book(3, T0))
        detector.feed_book(INST, book(4, T0 + delta_ms))

        assert self.level(detector).refill_count == expected

    def test_increase_after_init_is_not_refill(self, detector):
        detector.feed_book(INST, book(5, T0))
        detector.feed_book(INST, book(8, T0 + 100))

        lvl = self.level(detector)
        assert lvl.refill_count == 0
        assert lvl.last_change_type == ChangeType.INCREASE

    def test_increase_after_increase_is_not_refill(self, detector):
        for i, size in enumerate([5, 6, 7, 8]):
            detector.feed_book(INST, book(size, T0 + i * 100))

        assert self.level(detector).refill_count == 0

    def test_equal_size_between_decrease_and_increase(self, detector):
        """
        СЦЕНАРИЙ: 5 -> 3 -> 3 -> 4
        ОЖИДАНИЕ: равный объем не сбрасывает decrease, рост = refill
        """
        detector.feed_book(INST, book(5, T0))
        detector.feed_book(INST, book(3, T0 + 100))
        detector.feed_book(INST, book(3, T0 + 200))
        detector.feed_book(INST, book(4, T0 + 300))

        assert self.level(detector).refill_count == 1

    def test_repeated_refills_accumulate(self, detector):
        sizes = [10, 8, 10, 8, 10, 8, 10]
        for i, size in enumerate(sizes):
            detector.feed_book(INST, book(size, T0 + i * 100))

        assert self.level(detector).refill_count == 3

    def test_trades_do_not_change_direction(self, detector):
        """Сделка обновляет last_update, но не last_change_type"""
        detector.feed_book(INST, book(5, T0))
        detector.feed_book(INST, book(3, T0 + 100))
        detector.feed_trade(INST, {"price": 100, "size": 1, "side": "sell", "timestamp": T0 + 200})

        lvl = self.level(detector)
        assert lvl.last_change_type == ChangeType.DECREASE
        assert lvl.last_size == 3
        assert lvl.last_update == T0 + 200

    def test_trade_refreshes_refill_window(self, detector):
        """
        СЦЕНАРИЙ: decrease, через 40с сделка на уровне, еще через 1с рост
        ОЖИДАНИЕ: окно считается от last_update (сделки) -> refill
        """
        detector.feed_book(INST, book(5, T0))
        detector.feed_book(INST, book(3, T0 + 100))
        detector.feed_trade(INST, {"price": 100, "size": 1, "side": "sell", "timestamp": T0 + 40_000})
        detector.feed_book(INST, book(4, T0 + 41_000))

        assert self.level(detector).refill_count == 1

    def test_level_first_seen_in_trade_then_book_is_init(self, detector):
        detector.feed_trade(INST, {"price": 100, "size": 1, "side": "buy", "timestamp": T0})
        assert self.level(detector).last_size is None

        detector.feed_book(INST, book(5, T0 + 100))
        assert self.level(detector).last_change_type == ChangeType.INIT

    def test_custom_refill_window(self):
        detector = HiddenLiquidityDetector(config=get_config(refill_window_ms=500), clock=ManualClock(T0))
        detector.feed_book(INST, book(5, T0))
        detector.feed_book(INST, book(3, T0 + 100))
        detector.feed_book(INST, book(4, T0 + 700))

        assert detector.state.instruments[INST].level_state["100"].refill_count == 0


class TestBookSideEffects:

    @pytest.fixture
    def detector(self):
        return HiddenLiquidityDetector(clock=ManualClock(T0))

    def test_last_book_is_overwritten(self, detector):
        detector.feed_book(INST, book(5, T0))
        detector.feed_book(INST, book(7, T0 + 100))

        context = detector.state.instruments[INST]
        assert context.last_book.bids == [(100.0, 7.0)]
        assert context.last_book.timestamp == T0 + 100

    def test_missing_timestamp_uses_clock(self, detector):
        detector.feed_book(INST, {"bids": [[100, 5]]})
        lvl = detector.state.instruments[INST].level_state["100"]
        assert lvl.last_update == T0

    def test_asks_are_processed(self, detector):
        detector.feed_book(INST, {"bids": [], "asks": [[101, 4]], "timestamp": T0})
        detector.feed_book(INST, {"bids": [], "asks": [[101, 2]], "timestamp": T0 + 10})
        detector.feed_book(INST, {"bids": [], "asks": [[101, 4]], "timestamp": T0 + 20})

        assert detector.state.instruments[INST].level_state["101"].refill_count == 1

    @pytest.mark.invariant
    def test_recent_books_pruned_to_twice_refill_window(self, detector):
        detector.feed_book(INST, book(5, T0))
        detector.feed_book(INST, book(5, T0 + 30_000))
        detector.feed_book(INST, book(5, T0 + 70_000))

        timestamps = [ts for ts, _ in detector.state.instruments[INST].recent_books]
        assert timestamps == [T0 + 30_000, T0 + 70_000]

    def test_malformed_snapshot_does_not_raise(self, detector):
        detector.feed_book(INST, {})
        detector.feed_book(INST, None)

        signal = detector.get_signal(INST)
        assert signal is not None
        assert signal.score == 0.0
