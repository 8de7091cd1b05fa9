import math
from collections import Counter
from typing import List, Optional, Tuple

from config import DetectorConfig
from domain import (
    BookSnapshot,
    HiddenLiquiditySignal,
    IcebergReason,
    InstrumentContext,
    SignalBreakdown,
)

# --- Веса композитного score ---
W_ICEBERG = 0.25
W_ABSORPTION = 0.30
W_FOOTPRINT = 0.20
W_ONCHAIN = 0.15
W_OI = 0.10

# --- Вклад факторов в score уровня ---
W_REFILL = 0.6
W_VOLUME = 0.3
W_SMALL_TRADES = 0.1

REASON_MIN_SCORE = 0.12        # Уровень ниже этого не попадает в reasons
SMALL_TRADE_DEPTH_PCT = 0.01   # "Мелкая" сделка < 1% видимой глубины
FOOTPRINT_MIN_COUNT = 4        # Больше 4 сделок на одной цене = кластер
FOOTPRINT_FULL_COUNT = 20      # 20 сделок = footprint 1.0


def _cap_unit(value: float) -> float:
    # WHY: min(1, NaN) должен остаться NaN (встроенный min вернул бы 1)
    return value if math.isnan(value) else min(1.0, value)


def _is_set(value: Optional[float]) -> bool:
    """Цена/объем "есть": не None, не 0, не NaN"""
    return value is not None and value == value and value != 0


class HiddenLiquidityAnalyzer:
    """
    Signal Compositor: четыре независимых sub-score -> один композитный [0, 1].

    - iceberg: рефиллы + объем сделок на уровне относительно видимой глубины
    - absorption: односторонний поток без движения цены
    - footprint: кластер сделок на одной цене
    - external: on-chain / OI (задаются извне)

    Чистая функция от состояния инструмента и now: повторный вызов дает тот же результат.
    """

    def __init__(self, config: DetectorConfig):
        self.config = config

    def calculate_visible_depth(self, book: Optional[BookSnapshot]) -> float:
        """Сумма топ-N bid + топ-N ask объемов (в порядке снапшота), минимум 1"""
        depth = 0.0
        if book is not None:
            n = self.config.depth_levels
            for _, size in book.bids[:n]:
                depth += size if _is_set(size) else 0.0
            for _, size in book.asks[:n]:
                depth += size if _is_set(size) else 0.0
        return max(1.0, depth)

    def calculate_iceberg_score(
        self,
        context: InstrumentContext,
        visible_depth: float,
        now: int
    ) -> Tuple[float, List[IcebergReason]]:
        """
        Максимальный score среди уровней (не сумма).

        Уровни старше 2 * trade_window_ms пропускаются целиком.
        """
        cfg = self.config
        stale_after = cfg.trade_window_ms * 2
        small_trade_limit = max(1e-6, visible_depth * SMALL_TRADE_DEPTH_PCT)

        iceberg_score = 0.0
        reasons: List[IcebergReason] = []

        for key, level in context.level_state.items():
            if (now - level.last_update) > stale_after:
                continue

            refill_factor = _cap_unit(level.refill_count / cfg.refill_threshold)
            vol_factor = _cap_unit(level.trade_volume / (visible_depth * cfg.trade_volume_factor))
            # WHY: Уровень без сделок (avg=0) не считается "много мелких сделок"
            small_trade_bias = 1 if _is_set(level.avg_trade_size) and level.avg_trade_size < small_trade_limit else 0

            level_score = max(
                refill_factor * W_REFILL + vol_factor * W_VOLUME + small_trade_bias * W_SMALL_TRADES,
                0
            )

            if level_score > REASON_MIN_SCORE:
                iceberg_score = max(iceberg_score, level_score)
                reasons.append(IcebergReason(
                    price=float(key),
                    refill_count=level.refill_count,
                    trade_volume=level.trade_volume,
                    avg_trade_size=level.avg_trade_size,
                    score=level_score
                ))

        return iceberg_score, reasons

    def calculate_absorption_score(self, context: InstrumentContext, now: int) -> float:
        """
        Absorption: |delta| большой, а цена не сдвинулась.

        Сторона определяется ТОЛЬКО по подстроке side ('buy' / 'sell').
        Сделки с другим side не попадают ни в одну корзину.
        """
        cfg = self.config
        since = now - cfg.trade_window_ms

        taker_buy = 0.0
        taker_sell = 0.0
        first_price = None
        last_price = None

        for trade in context.recent_trades:
            if trade.timestamp < since:
                continue
            if first_price is None:
                first_price = trade.price
            last_price = trade.price

            side = trade.side.lower() if trade.side else ""
            if "buy" in side:
                taker_buy += trade.size
            elif "sell" in side:
                taker_sell += trade.size

        delta = taker_buy - taker_sell
        total_taker = max(1.0, taker_buy + taker_sell)

        if _is_set(first_price) and _is_set(last_price):
            price_move = abs((last_price - first_price) / first_price)
        else:
            price_move = 0.0

        if abs(delta) > cfg.delta_thresh_factor * math.sqrt(total_taker) and price_move < cfg.price_eps_pct:
            return _cap_unit(abs(delta) / (total_taker + 1))
        return 0.0

    def calculate_footprint_score(self, context: InstrumentContext) -> float:
        """Самый плотный кластер сделок на одной цене в окне"""
        # NaN != NaN: такие сделки ни с чем не совпадают
        counts = Counter(t.price for t in context.recent_trades if t.price == t.price)
        if not counts:
            return 0.0

        max_count = max(counts.values())
        if max_count > FOOTPRINT_MIN_COUNT:
            return min(1.0, max_count / FOOTPRINT_FULL_COUNT)
        return 0.0

    def compute_signal(self, context: InstrumentContext, now: int) -> HiddenLiquiditySignal:
        visible_depth = self.calculate_visible_depth(context.last_book)

        iceberg, reasons = self.calculate_iceberg_score(context, visible_depth, now)
        absorption = self.calculate_absorption_score(context, now)
        footprint = self.calculate_footprint_score(context)
        onchain = context.external_onchain_score
        oi = context.external_oi_score

        score = min(
            1.0,
            iceberg * W_ICEBERG
            + absorption * W_ABSORPTION
            + footprint * W_FOOTPRINT
            + onchain * W_ONCHAIN
            + oi * W_OI
        )

        return HiddenLiquiditySignal(
            coin=context.inst_id,
            score=score,
            breakdown=SignalBreakdown(
                iceberg=iceberg,
                absorption=absorption,
                footprint=footprint,
                onchain=onchain,
                oi=oi
            ),
            iceberg_reasons=reasons,
            last_updated=now
        )
