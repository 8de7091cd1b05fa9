"""
Пошаговая симуляция BTC сценария для ручной проверки детектора.

Сценарий:
1. Спокойный стакан вокруг 42000
2. 8 мелких продаж в бид 42000, бид каждый раз пополняется
3. 6 крупных продаж по 5.0, цена держится, бид частично восстанавливается
4. Внешние сигналы (on-chain приток, рост OI)
"""
from typing import List, Optional

import pandas as pd
from pydantic import BaseModel, Field

from domain import HiddenLiquiditySignal
from services import DEFAULT_INSTRUMENT, HiddenLiquidityDetector


class SimulationStep(BaseModel):
    t: int
    desc: str
    signal: Optional[HiddenLiquiditySignal] = None
    trade: Optional[dict] = None
    book: Optional[dict] = None
    external: Optional[dict] = None


class SimulationResult(BaseModel):
    steps: List[SimulationStep] = Field(default_factory=list)
    final: Optional[HiddenLiquiditySignal] = None


def run_detailed_btc_simulation(
    detector: Optional[HiddenLiquidityDetector] = None,
    inst_id: str = DEFAULT_INSTRUMENT
) -> SimulationResult:
    det = detector or HiddenLiquidityDetector()
    now = det.clock()
    result = SimulationResult()

    # 1) Начальный стакан
    book0 = {
        "bids": [[42000, 50], [41990, 40], [41980, 30]],
        "asks": [[42010, 45], [42020, 35], [42030, 20]],
        "timestamp": now
    }
    det.feed_book(inst_id, book0)
    result.steps.append(SimulationStep(
        t=0, desc="Initial book snapshot (calm range 42k)", book=book0, signal=det.get_signal(inst_id)
    ))

    # 2) Мелкие продажи в бид 42000, стакан сразу пополняется
    for i in range(1, 9):
        ts = now + i * 200
        trade = {"price": 42000, "size": 0.6, "side": "sell", "timestamp": ts}
        det.feed_trade(inst_id, trade)
        book = {
            "bids": [[42000, 50 + i], [41990, 40]],
            "asks": [[42010, 45], [42020, 35]],
            "timestamp": ts + 50
        }
        det.feed_book(inst_id, book)
        result.steps.append(SimulationStep(
            t=i, desc=f"Small sell #{i} hits 42000 and book refills",
            trade=trade, book=book, signal=det.get_signal(inst_id)
        ))

    # 3) Крупные продажи, цена держится
    burst_start = now + 9 * 200
    for j in range(6):
        ts = burst_start + j * 500
        trade = {"price": 42000, "size": 5.0, "side": "sell", "timestamp": ts}
        det.feed_trade(inst_id, trade)
        book = {
            "bids": [[42000, 30 + j], [41990, 40]],
            "asks": [[42010, 45], [42020, 35]],
            "timestamp": ts + 100
        }
        det.feed_book(inst_id, book)
        result.steps.append(SimulationStep(
            t=20 + j, desc=f"Burst sell {j + 1}x 5.0 at 42000",
            trade=trade, book=book, signal=det.get_signal(inst_id)
        ))

    # 4) Внешние сигналы
    external = {"onchain": 0.6, "oi": 0.4}
    det.feed_external(inst_id, external)
    result.steps.append(SimulationStep(
        t=100, desc="On-chain inflow and OI build detected (external feed)",
        external=external, signal=det.get_signal(inst_id)
    ))

    # 5) Итог
    result.final = det.get_signal(inst_id)
    result.steps.append(SimulationStep(t=200, desc="Final aggregated signal", signal=result.final))
    return result


def steps_to_frame(steps: List[SimulationStep]) -> pd.DataFrame:
    """Таблица score по шагам (для вывода в консоль / анализа)"""
    rows = []
    for step in steps:
        row = {"t": step.t, "desc": step.desc}
        if step.signal is not None:
            row["score"] = step.signal.score
            row.update(step.signal.breakdown.model_dump())
            row["reasons"] = len(step.signal.iceberg_reasons)
        rows.append(row)
    return pd.DataFrame(rows, columns=[
        "t", "desc", "score", "iceberg", "absorption", "footprint", "onchain", "oi", "reasons"
    ])
