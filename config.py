"""
Message Exchange Configuration
==============================
Централизованная конфигурация для codec, gather и wire слоёв.

Значения по умолчанию переопределяются через переменные окружения
(или файл .env в рабочей директории).
"""

from dataclasses import dataclass, field
from typing import Dict

import os

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# ============================================================================
# Environment overrides
# ============================================================================

# Quantization mode used when the caller does not pass one: none | fp16 | uint8
ARRAY_QUANT: str = os.getenv("JINA_ARRAY_QUANT", "none").strip().lower() or "none"

GATHER_TIMEOUT: float = _env_float("JINA_GATHER_TIMEOUT", 10.0)
GATHER_SWEEP_INTERVAL: float = _env_float("JINA_GATHER_SWEEP_INTERVAL", 1.0)
GATHER_DISPATCHED_TTL: float = _env_float("JINA_GATHER_DISPATCHED_TTL", 300.0)

LOG_LEVEL: str = os.getenv("JINA_LOG_LEVEL", "INFO").strip().upper() or "INFO"

WIRE_MAX_PAYLOAD: int = _env_int("JINA_WIRE_MAX_PAYLOAD", 64 * 1024 * 1024)


@dataclass
class CodecConfig:
    """Настройки TensorCodec."""

    # Режим квантования по умолчанию (имя QuantizationMode)
    quantization: str = ARRAY_QUANT


@dataclass
class GatherConfig:
    """Настройки сборки частичных запросов."""

    # Таймаут (секунды), если Envelope.timeout == 0
    default_timeout: float = GATHER_TIMEOUT

    # Период фоновой очистки просроченных bucket'ов
    sweep_interval: float = GATHER_SWEEP_INTERVAL

    # Сколько помнить уже отправленные request_id (для отбраковки опоздавших частей)
    dispatched_ttl: float = GATHER_DISPATCHED_TTL

    # Имя узла, которое попадает в Status.Details
    pod: str = "gateway"
    pod_id: str = ""


@dataclass
class LogConfig:
    """Настройки логирования."""

    level: str = LOG_LEVEL
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # Сколько строк лога держать для SpawnRequest стрима
    spawn_buffer_size: int = 1000


@dataclass
class WireConfig:
    """Настройки бинарного фрейма."""

    max_payload_size: int = WIRE_MAX_PAYLOAD


@dataclass
class Config:
    """Главный конфигурационный класс."""

    codec: CodecConfig = field(default_factory=CodecConfig)
    gather: GatherConfig = field(default_factory=GatherConfig)
    log: LogConfig = field(default_factory=LogConfig)
    wire: WireConfig = field(default_factory=WireConfig)


# Глобальный экземпляр конфигурации
config = Config()


def get_environment_overrides() -> Dict[str, object]:
    """Вернуть значения, прочитанные из окружения."""
    return {
        "JINA_ARRAY_QUANT": ARRAY_QUANT,
        "JINA_GATHER_TIMEOUT": GATHER_TIMEOUT,
        "JINA_GATHER_SWEEP_INTERVAL": GATHER_SWEEP_INTERVAL,
        "JINA_GATHER_DISPATCHED_TTL": GATHER_DISPATCHED_TTL,
        "JINA_LOG_LEVEL": LOG_LEVEL,
        "JINA_WIRE_MAX_PAYLOAD": WIRE_MAX_PAYLOAD,
    }
