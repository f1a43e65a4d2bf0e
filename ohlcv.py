import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Union

import pandas as pd
from dateutil import parser as dateparser

MINUTE_MS = 60_000
DAY_MS = 24 * 60 * MINUTE_MS

# Column layout shared by exports and API output
BAR_COLUMNS = ["time", "open", "high", "low", "close", "volume"]


class LoaderError(Exception):
    """Base class for every failure raised by the loader components."""


@dataclass(frozen=True)
class MinuteBar:
    time: int  # open time, ms since epoch, multiple of MINUTE_MS
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MinuteBar":
        return cls(
            time=int(d["time"]),
            open=float(d["open"]),
            high=float(d["high"]),
            low=float(d["low"]),
            close=float(d["close"]),
            volume=float(d["volume"]),
        )


@dataclass
class AggregateBar:
    """OHLCV bar spanning several minutes. ``time`` is the first constituent minute."""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def opened_by(cls, bar: MinuteBar) -> "AggregateBar":
        return cls(bar.time, bar.open, bar.high, bar.low, bar.close, bar.volume)

    def absorb(self, bar: MinuteBar) -> None:
        if bar.high > self.high:
            self.high = bar.high
        if bar.low < self.low:
            self.low = bar.low
        self.close = bar.close
        self.volume += bar.volume

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Bar = Union[MinuteBar, AggregateBar]


# --------------------------
# Time helpers
# --------------------------

def utc_now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def floor_minute(ms: int) -> int:
    return (ms // MINUTE_MS) * MINUTE_MS


def ceil_minute(ms: int) -> int:
    return -((-ms) // MINUTE_MS) * MINUTE_MS


def iso_to_ms(iso_str: str) -> int:
    dt = dateparser.isoparse(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def ms_to_iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


# --------------------------
# Value codec
# --------------------------

def serialize_bar(bar: MinuteBar) -> bytes:
    # json writes floats with repr(), so the round trip is exact
    return json.dumps(bar.to_dict(), separators=(",", ":")).encode("utf-8")


def deserialize_bar(data: bytes) -> MinuteBar:
    try:
        return MinuteBar.from_dict(json.loads(data.decode("utf-8")))
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"malformed bar record: {e}") from e


# --------------------------
# DataFrame helpers
# --------------------------

def ensure_numeric_schema(df: pd.DataFrame, logger: logging.Logger) -> pd.DataFrame:
    """Enforce BAR_COLUMNS order and dtypes (int64 time, float64 prices/volume).
    Rows whose fields cannot be coerced are dropped with a warning.
    """
    df = df.reindex(columns=BAR_COLUMNS)
    for c in BAR_COLUMNS:
        df[c] = pd.to_numeric(df[c], errors="coerce")
    mask = df[BAR_COLUMNS].isna().any(axis=1)
    dropped = int(mask.sum())
    if dropped:
        logger.warning(f"ensure_numeric_schema: dropping {dropped} invalid row(s) out of {len(df)}")
        df = df[~mask]
    df = df.astype({"time": "int64", "open": "float64", "high": "float64",
                    "low": "float64", "close": "float64", "volume": "float64"})
    return df.reset_index(drop=True)


def bars_to_frame(bars: Iterable[Bar], logger: logging.Logger = None) -> pd.DataFrame:
    rows: List[Dict[str, Any]] = [b.to_dict() for b in bars]
    df = pd.DataFrame(rows, columns=BAR_COLUMNS)
    return ensure_numeric_schema(df, logger or logging.getLogger("minuteloader"))
