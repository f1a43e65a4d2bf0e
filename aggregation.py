import logging
from typing import List, Optional

from bar_store import BarStore, StoreError
from ohlcv import MINUTE_MS, AggregateBar, LoaderError, MinuteBar, ms_to_iso, utc_now_ms


class NoDataError(LoaderError):
    """No minute bars were found in the requested aggregation window."""


def read_minutes(store: BarStore, start_ms: int, end_ms: int, logger: logging.Logger) -> List[MinuteBar]:
    """Read each minute key in [start_ms, end_ms) one by one.
    Missing or unreadable minutes are skipped with a warning.
    """
    minutes: List[MinuteBar] = []
    for t in range(start_ms, end_ms, MINUTE_MS):
        try:
            bar = store.get(t)
        except StoreError as e:
            logger.warning(f"Failed to read minute {t} from store: {e}")
            continue
        if bar is None:
            logger.warning(f"Missing data at {t} ({ms_to_iso(t)})")
            continue
        minutes.append(bar)
    return minutes


def fold_minutes(minutes: List[MinuteBar], window_ms: int) -> List[AggregateBar]:
    """Roll ordered minute bars into window_ms sized bars.

    A bar is emitted at a boundary only when it absorbed at least one minute
    after its opening minute, so a window holding a single minute is dropped.
    The trailing bar follows the same rule, except that it is always emitted
    when nothing else has been, which keeps a one-minute input from producing
    an empty result.
    """
    bars: List[AggregateBar] = []
    current: Optional[AggregateBar] = None
    current_end = 0
    has_additional = False

    for m in minutes:
        if current is None or m.time >= current_end:
            if current is not None and has_additional:
                bars.append(current)
            has_additional = False
            current = AggregateBar.opened_by(m)
            current_end = m.time + window_ms
            continue
        current.absorb(m)
        has_additional = True

    if current is not None and (has_additional or not bars):
        bars.append(current)
    return bars


def aggregate(store: BarStore,
              bar_count: int,
              window_ms: int,
              end_ms: Optional[int] = None,
              logger: Optional[logging.Logger] = None) -> List[AggregateBar]:
    """Aggregate the last ``bar_count`` windows of ``window_ms`` from stored minutes, oldest first."""
    logger = logger or logging.getLogger("minuteloader")
    if window_ms <= 0 or window_ms % MINUTE_MS:
        raise ValueError(f"window must be a positive whole number of minutes, got {window_ms}ms")
    if bar_count <= 0:
        raise ValueError(f"bar_count must be positive, got {bar_count}")

    if end_ms is None:
        end_ms = utc_now_ms()
    start_ms = end_ms - bar_count * window_ms
    start_ms = (start_ms // window_ms) * window_ms

    oldest = next(store.iter_minute_keys(), None)
    if oldest is None:
        raise NoDataError("no data available: store holds no minute bars")
    # Minutes older than the oldest stored key are never read
    start_ms = max(start_ms, (oldest // window_ms) * window_ms)

    minutes = read_minutes(store, start_ms, end_ms, logger)
    if not minutes:
        raise NoDataError(f"no data available between {ms_to_iso(start_ms)} and {ms_to_iso(end_ms)}")
    return fold_minutes(minutes, window_ms)
