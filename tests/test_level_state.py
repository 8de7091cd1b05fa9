"""
Level State Store: ключи уровней, коэрсия входа, агрегаты LevelRecord
"""
import math

import pytest

from domain import BookSnapshot, ChangeType, LevelRecord, TradeEvent, price_key


class TestPriceKey:
    """Ключ уровня = строка числа (как в JS)"""

    def test_integral_price_has_no_fraction(self):
        assert price_key(42000.0) == "42000"

    def test_fractional_price(self):
        assert price_key(42000.5) == "42000.5"

    def test_negative_zero_is_zero(self):
        assert price_key(-0.0) == "0"

    def test_nan_price(self):
        assert price_key(math.nan) == "NaN"

    def test_near_equal_floats_fragment(self):
        """
        ИЗВЕСТНОЕ ОГРАНИЧЕНИЕ: 0.1 + 0.2 и 0.3 - разные уровни
        """
        assert price_key(0.1 + 0.2) != price_key(0.3)

    @pytest.mark.parametrize("price, expected", [
        (1e-7, "1e-7"),
        (-2.5e-8, "-2.5e-8"),
        (1.5e-5, "0.000015"),
        (1e-6, "0.000001"),
        (1e21, "1e+21"),
        (1.5e22, "1.5e+22"),
    ])
    def test_exponent_format_matches_js_number(self, price, expected):
        assert price_key(price) == expected


class TestInputCoercion:
    """Вход не валидируется строго: мусор -> NaN, пустое -> пустое"""

    def test_trade_accepts_ts_alias(self):
        trade = TradeEvent.model_validate({"price": 100, "size": 1, "side": "buy", "ts": 1700000000000})
        assert trade.timestamp == 1700000000000

    def test_zero_timestamp_means_missing(self):
        trade = TradeEvent(price=100, size=1, timestamp=0)
        assert trade.timestamp is None

    def test_string_timestamp_from_exchange(self):
        trade = TradeEvent(price="42000.1", size="0.5", side="sell", timestamp="1700000000123")
        assert trade.price == pytest.approx(42000.1)
        assert trade.size == pytest.approx(0.5)
        assert trade.timestamp == 1700000000123

    def test_non_numeric_price_becomes_nan(self):
        trade = TradeEvent(price="abc", size=None)
        assert math.isnan(trade.price)
        assert math.isnan(trade.size)

    def test_missing_book_sides_are_empty(self):
        book = BookSnapshot.model_validate({"bids": None})
        assert book.bids == []
        assert book.asks == []

    def test_okx_levels_use_first_two_items(self):
        book = BookSnapshot.model_validate({"bids": [["42000", "5", "0", "2"]], "asks": []})
        assert book.bids == [(42000.0, 5.0)]

    def test_non_sequence_entries_are_skipped(self):
        book = BookSnapshot.model_validate({"bids": [[100, 1], "garbage", 7], "asks": []})
        assert book.bids == [(100.0, 1.0)]


class TestLevelRecord:

    def test_new_record_defaults(self):
        level = LevelRecord()
        assert level.last_size is None
        assert level.last_change_type is None
        assert level.refill_count == 0
        assert level.trade_volume == 0.0

    def test_incremental_average(self):
        """avg_new = (avg_old * (n - 1) + size) / n"""
        level = LevelRecord()
        for ts, size in enumerate([1.0, 2.0, 3.0], start=1):
            level.record_trade(size, ts)

        assert level.trade_volume == pytest.approx(6.0)
        assert level.trades_count == 3
        assert level.avg_trade_size == pytest.approx(2.0)
        assert level.last_update == 3

    def test_trade_does_not_touch_book_state(self):
        level = LevelRecord()
        level.record_trade(1.5, 10)
        assert level.last_size is None
        assert level.last_change_type is None

    def test_first_observation_is_init(self):
        level = LevelRecord()
        refilled = level.observe_size(5.0, 100, refill_window_ms=30_000)
        assert refilled is False
        assert level.last_change_type == ChangeType.INIT
        assert level.last_size == 5.0
        assert level.last_update == 100

    def test_equal_size_keeps_direction(self):
        level = LevelRecord()
        level.observe_size(5.0, 0, 30_000)
        level.observe_size(3.0, 10, 30_000)
        level.observe_size(3.0, 20, 30_000)
        assert level.last_change_type == ChangeType.DECREASE
        assert level.last_update == 20

    def test_nan_size_never_refills(self):
        level = LevelRecord()
        level.observe_size(5.0, 0, 30_000)
        level.observe_size(3.0, 10, 30_000)
        assert level.observe_size(math.nan, 20, 30_000) is False
        assert level.last_change_type == ChangeType.DECREASE
        assert level.refill_count == 0
