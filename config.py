import os
from dataclasses import dataclass, fields, replace
from typing import Optional

from dotenv import load_dotenv


@dataclass
class DetectorConfig:
    """Конфигурация детектора скрытой ликвидности (общая для всех инструментов)"""

    # --- 1. Окна времени (мс) ---
    refill_window_ms: int = 30_000      # Рост объема после падения внутри окна = refill
    trade_window_ms: int = 30_000       # Скользящее окно сделок (absorption / footprint)

    # --- 2. Iceberg ---
    refill_threshold: int = 4           # Столько рефиллов = refill_factor 1.0
    trade_volume_factor: float = 2.5    # trade_volume / (visible_depth * factor)

    # --- 3. Absorption ---
    price_eps_pct: float = 0.004        # 0.4% - цена "стоит на месте"
    delta_thresh_factor: float = 3.0    # |delta| > k * sqrt(total)

    # --- 4. Alerts ---
    alert_threshold: float = 0.35
    alert_mute_ms: int = 60_000         # Не чаще одного алерта в минуту на инструмент

    # --- 5. Visible depth ---
    depth_levels: int = 10              # Топ-N уровней каждой стороны

    def __post_init__(self):
        # WHY: 0 / None для алертов означает "не задано" -> дефолт
        if not self.alert_threshold:
            self.alert_threshold = 0.35
        if not self.alert_mute_ms:
            self.alert_mute_ms = 60_000

        # Делители в формулах iceberg score
        if self.refill_threshold <= 0:
            raise ValueError("refill_threshold must be positive")
        if self.trade_volume_factor <= 0:
            raise ValueError("trade_volume_factor must be positive")


DEFAULT_CONFIG = DetectorConfig()

_OPTION_NAMES = {f.name for f in fields(DetectorConfig)}


def get_config(**overrides) -> DetectorConfig:
    """
    Возвращает DEFAULT_CONFIG с переопределенными параметрами.

    Raises:
        ValueError: неизвестное имя параметра
    """
    unknown = set(overrides) - _OPTION_NAMES
    if unknown:
        raise ValueError(f"Unknown detector options: {sorted(unknown)}")
    return replace(DEFAULT_CONFIG, **overrides)


def load_config_from_env(prefix: str = "HL_", dotenv_path: Optional[str] = None) -> DetectorConfig:
    """
    Читает параметры из окружения (и .env файла): HL_REFILL_WINDOW_MS, HL_ALERT_THRESHOLD, ...

    Типы берутся из DetectorConfig (int / float).
    """
    load_dotenv(dotenv_path)

    overrides = {}
    for f in fields(DetectorConfig):
        raw = os.getenv(f"{prefix}{f.name.upper()}")
        if raw is None or raw.strip() == "":
            continue
        default = getattr(DEFAULT_CONFIG, f.name)
        overrides[f.name] = int(raw) if isinstance(default, int) else float(raw)

    return get_config(**overrides)
