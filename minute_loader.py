import os
import sys
import json
import time
import logging
import threading
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Tuple

import pyarrow as pa
import pyarrow.parquet as pq

try:
    import ccxt  # type: ignore
except Exception:  # pragma: no cover
    ccxt = None

from aggregation import NoDataError, aggregate, fold_minutes, read_minutes
from bar_store import BarStore, StoreError
from ohlcv import (
    DAY_MS,
    MINUTE_MS,
    LoaderError,
    MinuteBar,
    bars_to_frame,
    ceil_minute,
    floor_minute,
    iso_to_ms,
    ms_to_iso,
    utc_now_ms,
)

# --------------------------
# Configuration and Defaults
# --------------------------
SYMBOL = os.environ.get("SYMBOL", "BTCUSDT")  # Binance spot symbol id
KLINES_URL = "https://api.binance.com/api/v3/klines"
TIMEFRAME = "1m"
# Binance spot klines accept at most 1000 rows per request
MAX_CHUNK_MINUTES = 1000
# Minute bars committed per store transaction; the watermark moves after each one
PERSIST_BATCH_SIZE = 1000
BOOTSTRAP_DAYS = int(os.environ.get("BOOTSTRAP_DAYS", "7"))
# Pause between consecutive chunk requests
REQUEST_DELAY_SEC = float(os.environ.get("REQUEST_DELAY_SEC", "3.0"))
REQUEST_TIMEOUT_MS = int(os.environ.get("REQUEST_TIMEOUT_MS", "10000"))
SYNC_INTERVAL_SEC = float(os.environ.get("SYNC_INTERVAL_SEC", "60"))
REFRESH_INTERVAL_SEC = float(os.environ.get("REFRESH_INTERVAL_SEC", "5"))
AGG_WINDOW_MINUTES = int(os.environ.get("AGG_WINDOW_MINUTES", "15"))
AGG_BAR_COUNT = int(os.environ.get("AGG_BAR_COUNT", "300"))

DEFAULT_DATA_BASE = os.environ.get("MARKET_DATA_DIR", "data")
DATA_ROOT = os.path.join(DEFAULT_DATA_BASE, "binance", SYMBOL, TIMEFRAME)
STORE_FILE = os.path.join(DATA_ROOT, f"{SYMBOL}.sqlite3")
LOG_DIR = os.path.join("logs")
LOG_FILE = os.path.join(LOG_DIR, "loader.log")
PARQUET_COMPRESSION = "zstd"

LOGGER_NAME = "minuteloader"


# --------------------------
# Logging
# --------------------------

_atexit_registered = False


def shutdown_logging():
    """Close and remove all handlers attached to the loader logger."""
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        try:
            h.flush()
            h.close()
        finally:
            logger.removeHandler(h)


def setup_logging(verbose: bool = True) -> logging.Logger:
    global _atexit_registered
    os.makedirs(LOG_DIR, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    # Avoid duplicate handlers if setup_logging is called multiple times
    if logger.handlers:
        shutdown_logging()
    formatter = logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    fh = RotatingFileHandler(LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    if verbose:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(logging.INFO)
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    if not _atexit_registered:
        import atexit
        atexit.register(shutdown_logging)
        _atexit_registered = True
    return logger


# --------------------------
# Errors
# --------------------------

class SyncError(LoaderError):
    """A synchronize pass failed."""


class TransportError(SyncError):
    """The remote call failed or returned a non-success status."""


class ContinuityError(SyncError):
    """A fetched chunk is not a gapless ascending run of minutes."""


class SyncCancelled(SyncError):
    """The engine was asked to stop while a pass was running."""


def check_continuity(bars: List[MinuteBar]) -> None:
    if not bars:
        raise ContinuityError("no data received")
    first = bars[0].time
    for k, bar in enumerate(bars):
        expected = first + k * MINUTE_MS
        if bar.time != expected:
            raise ContinuityError(
                f"continuity check failed for chunk {first} to {bars[-1].time}: "
                f"missing data at {ms_to_iso(expected)} (expected {expected}, got {bar.time})"
            )


# --------------------------
# Exchange Client
# --------------------------

def parse_kline_rows(rows: List[List[Any]], logger: logging.Logger) -> List[MinuteBar]:
    """Convert raw Binance kline rows ([open_time, "open", "high", "low", "close", "volume", ...])
    into MinuteBars. Malformed rows are skipped with a warning.
    """
    bars: List[MinuteBar] = []
    for r in rows or []:
        if not r or len(r) < 6:
            logger.warning(f"Skipping malformed kline row: {r}")
            continue
        try:
            bars.append(MinuteBar(
                time=int(float(r[0])),
                open=float(r[1]),
                high=float(r[2]),
                low=float(r[3]),
                close=float(r[4]),
                volume=float(r[5]),
            ))
        except (TypeError, ValueError):
            logger.warning(f"Skipping kline with non-numeric fields: {r}")
    return bars


class BinanceKlineClient:
    """Remote source of 1m bars: up to ``count`` consecutive bars ending at or before ``end_ms``."""

    def __init__(self, symbol: str = SYMBOL, timeout_ms: int = REQUEST_TIMEOUT_MS,
                 logger: Optional[logging.Logger] = None, exchange=None):
        self.symbol = symbol
        self.timeout_ms = timeout_ms
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._exchange = exchange

    @property
    def exchange(self):
        if self._exchange is None:
            if ccxt is None:
                raise RuntimeError("ccxt is not installed. Please install the project dependencies")
            self._exchange = ccxt.binance({
                "enableRateLimit": True,
                "timeout": self.timeout_ms,
            })
        return self._exchange

    def fetch(self, count: int, end_ms: int) -> List[MinuteBar]:
        if not 1 <= count <= MAX_CHUNK_MINUTES:
            raise ValueError(f"count must be within 1..{MAX_CHUNK_MINUTES}, got {count}")
        params = {
            "symbol": self.symbol,
            "interval": TIMEFRAME,
            "limit": count,
            "endTime": end_ms,
        }
        self.logger.info(f"Fetching {count} kline(s) ending at {ms_to_iso(end_ms)} from {KLINES_URL}")
        try:
            rows = self.exchange.publicGetKlines(params)
        except ccxt.BaseError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e
        return parse_kline_rows(rows, self.logger)

    def close(self) -> None:
        if self._exchange is not None and hasattr(self._exchange, "close"):
            self._exchange.close()


# --------------------------
# Status
# --------------------------

class SyncStatus:
    """Progress and error state of the sync task, shared with status readers.

    Every field is written and read under one lock; use snapshot() for a
    consistent view. error_message is never cleared by a successful run, so
    the last failure stays visible until a newer one replaces it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.fetching = False
        self.error_message = ""
        self.status_text = ""
        self.start_time: Optional[float] = None
        self.total_minutes = 0
        self.minutes_completed = 0
        self._text_prefix = ""

    def begin(self, text: str) -> None:
        with self._lock:
            self.fetching = True
            self.start_time = time.time()
            self.status_text = text
            self._text_prefix = text
            self.total_minutes = 0
            self.minutes_completed = 0

    def plan(self, total_minutes: int) -> None:
        with self._lock:
            self.total_minutes = total_minutes
            self.minutes_completed = 0

    def advance(self, minutes_completed: int) -> str:
        with self._lock:
            self.minutes_completed = minutes_completed
            remaining = max(0, self.total_minutes - minutes_completed)
            elapsed = time.time() - (self.start_time or time.time())
            avg_sec_per_minute = elapsed / minutes_completed if minutes_completed else 0.0
            remaining_sec = int(avg_sec_per_minute * remaining)
            self.status_text = f"{self._text_prefix} {remaining} minutes remaining (~{remaining_sec}s)"
            return self.status_text

    def finish(self) -> None:
        with self._lock:
            self.fetching = False
            self.status_text = ""

    def record_error(self, err: BaseException) -> str:
        with self._lock:
            self.error_message = f"ERROR: {err}"
            return self.error_message

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "fetching": self.fetching,
                "error_message": self.error_message,
                "status_text": self.status_text,
                "start_time": self.start_time,
                "total_minutes": self.total_minutes,
                "minutes_completed": self.minutes_completed,
            }


# --------------------------
# Sync Engine
# --------------------------

class SyncEngine:
    """Backfills missing minutes from the remote source into the bar store.

    At most one synchronize() pass runs at a time; a trigger that arrives
    while a pass is in flight returns None without doing anything.
    """

    def __init__(self, store: BarStore, client, status: Optional[SyncStatus] = None,
                 logger: Optional[logging.Logger] = None,
                 clock=utc_now_ms,
                 request_delay_sec: float = REQUEST_DELAY_SEC,
                 bootstrap_days: int = BOOTSTRAP_DAYS,
                 persist_batch_size: int = PERSIST_BATCH_SIZE,
                 source_label: str = KLINES_URL):
        self.store = store
        self.client = client
        self.status = status if status is not None else SyncStatus()
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.clock = clock
        self.request_delay_sec = request_delay_sec
        self.bootstrap_days = bootstrap_days
        self.persist_batch_size = max(1, int(persist_batch_size))
        self.source_label = source_label
        self.stop_event = threading.Event()
        self._run_lock = threading.Lock()

    def cancel(self) -> None:
        """Stop the running pass at the next chunk boundary and make later passes exit early."""
        self.stop_event.set()

    def synchronize(self) -> Optional[int]:
        """Fetch and persist every minute missing since the watermark.
        Returns the number of bars written, or None if another pass is already running.
        """
        if not self._run_lock.acquire(blocking=False):
            self.logger.info("Synchronize already in progress; ignoring overlapping trigger")
            return None
        try:
            self.status.begin(f"Fetching data via API: {self.source_label}...")
            try:
                return self._synchronize()
            except Exception as e:
                self.logger.error(self.status.record_error(e))
                raise
            finally:
                self.status.finish()
        finally:
            self._run_lock.release()

    def _synchronize(self) -> int:
        end_ms = self.clock()
        if self.store.is_empty():
            start_ms = end_ms - self.bootstrap_days * DAY_MS
            self.logger.info(f"Store is empty; bootstrapping the last {self.bootstrap_days} day(s)")
        else:
            latest = self.store.get_watermark()
            if latest is None:
                raise StoreError("no latest timestamp found in store")
            start_ms = latest + MINUTE_MS

        if start_ms > end_ms:
            self.logger.info("No sync needed; store is up to date")
            return 0

        # Minute slots whose open time lies in [start_ms, end_ms], the in-progress one included
        total = (floor_minute(end_ms) - ceil_minute(start_ms)) // MINUTE_MS + 1
        if total <= 0:
            return 0
        self.logger.info(f"Syncing {total} minute(s) from {ms_to_iso(start_ms)} to {ms_to_iso(end_ms)}")
        bars = self._backfill(end_ms, total)
        return self._persist(bars, start_ms, end_ms)

    def _backfill(self, end_ms: int, total: int) -> List[MinuteBar]:
        self.status.plan(total)
        chunks: List[List[MinuteBar]] = []
        remaining = total
        completed = 0
        cursor = end_ms
        requests = 0

        while remaining > 0:
            if requests and self.request_delay_sec > 0:
                self.stop_event.wait(self.request_delay_sec)
            if self.stop_event.is_set():
                raise SyncCancelled(f"sync cancelled with {remaining} minute(s) left to fetch")

            count = min(remaining, MAX_CHUNK_MINUTES)
            try:
                chunk = self.client.fetch(count, cursor)
            except TransportError as e:
                raise TransportError(f"failed to fetch data ending at {cursor}: {e}") from e
            requests += 1

            if chunk:
                check_continuity(chunk)
                # Chunks arrive newest first; reversed below to restore time order
                chunks.append(chunk)

            completed += count
            remaining -= count
            self.logger.info(self.status.advance(completed))

            if chunk:
                cursor = chunk[0].time - MINUTE_MS
            else:
                cursor -= count * MINUTE_MS

        return [bar for chunk in reversed(chunks) for bar in chunk]

    def _persist(self, bars: List[MinuteBar], start_ms: int, end_ms: int) -> int:
        # The minute that was open when the first chunk was fetched stays
        # unfinished in the fetched data, even if the clock has moved on since
        boundary = min(floor_minute(self.clock()), floor_minute(end_ms))
        pending = [b for b in bars if start_ms <= b.time < boundary]
        written = 0
        for i in range(0, len(pending), self.persist_batch_size):
            batch = pending[i:i + self.persist_batch_size]
            latest = 0
            try:
                for bar in batch:
                    self.store.put(bar.time, bar)
                    latest = max(latest, bar.time)
                self.store.set_watermark(latest)
            except StoreError:
                try:
                    self.store.discard()
                except StoreError as e:
                    self.logger.error(f"Failed to discard unflushed batch: {e}")
                raise
            self.store.flush()
            written += len(batch)

        if written:
            self.logger.info(f"Stored {written} minute bar(s); watermark now {ms_to_iso(self.store.get_watermark())}")
        else:
            self.logger.info("No completed minutes to store")
        return written


# --------------------------
# Periodic driver
# --------------------------

def run_periodic(engine: SyncEngine, interval_sec: float = SYNC_INTERVAL_SEC,
                 logger: Optional[logging.Logger] = None) -> None:
    """Run synchronize() now and then every interval_sec until the engine is cancelled."""
    logger = logger or logging.getLogger(LOGGER_NAME)
    while not engine.stop_event.is_set():
        try:
            engine.synchronize()
        except LoaderError as e:
            logger.warning(f"Sync pass failed, next attempt in {interval_sec:.0f}s: {e}")
        if engine.stop_event.wait(interval_sec):
            break
    logger.info("Periodic sync stopped")


def start_background_sync(engine: SyncEngine, interval_sec: float = SYNC_INTERVAL_SEC,
                          logger: Optional[logging.Logger] = None) -> threading.Thread:
    t = threading.Thread(target=run_periodic, args=(engine, interval_sec, logger), name="minute-sync", daemon=True)
    t.start()
    return t


def live(logger: logging.Logger, store_file: str = STORE_FILE,
         window_minutes: int = AGG_WINDOW_MINUTES, bar_count: int = AGG_BAR_COUNT,
         refresh_sec: float = REFRESH_INTERVAL_SEC):
    """Background sync plus a foreground refresh loop printing the newest aggregate bar."""
    store = BarStore(store_file, logger)
    client = BinanceKlineClient(logger=logger)
    engine = SyncEngine(store, client, logger=logger)
    worker = start_background_sync(engine, SYNC_INTERVAL_SEC, logger)
    window_ms = window_minutes * MINUTE_MS
    last_error = ""
    try:
        while True:  # pragma: no cover (long-running loop)
            snap = engine.status.snapshot()
            if snap["fetching"] and snap["status_text"]:
                logger.info(snap["status_text"])
            if snap["error_message"] and snap["error_message"] != last_error:
                logger.warning(snap["error_message"])
                last_error = snap["error_message"]
            try:
                bars = aggregate(store, bar_count, window_ms, logger=logger)
                b = bars[-1]
                logger.info(
                    f"{window_minutes}m bars={len(bars)} last={ms_to_iso(b.time)} "
                    f"O={b.open} H={b.high} L={b.low} C={b.close} V={b.volume:.4f}"
                )
            except NoDataError as e:
                logger.info(f"Waiting for data: {e}")
            time.sleep(refresh_sec)
    finally:
        engine.cancel()
        worker.join(timeout=10)
        client.close()
        store.close()


# --------------------------
# Verification, export, health
# --------------------------

def verify_continuity(store: BarStore, logger: logging.Logger) -> Tuple[bool, List[Tuple[int, int]]]:
    """Scan every stored minute key and report gaps as (last_present, next_present) pairs.
    Also checks that the watermark equals the newest stored minute.
    """
    gaps: List[Tuple[int, int]] = []
    prev: Optional[int] = None
    count = 0
    for t in store.iter_minute_keys():
        if prev is not None and t - prev != MINUTE_MS:
            gaps.append((prev, t))
            missing = (t - prev) // MINUTE_MS - 1
            logger.error(f"Gap of {missing} minute(s) between {ms_to_iso(prev)} and {ms_to_iso(t)}")
        prev = t
        count += 1

    if prev is None:
        logger.info("Store holds no minute bars; nothing to verify.")
        return True, gaps

    ok = not gaps
    watermark = store.get_watermark()
    if watermark != prev:
        logger.error(f"Watermark {watermark} does not match newest stored minute {prev}")
        ok = False
    if ok:
        logger.info(f"Continuity verified: {count} minute(s) without gaps up to {ms_to_iso(prev)}.")
    return ok, gaps


def _atomic_write_parquet(table: pa.Table, path: str) -> None:
    tmp_path = path + ".tmp"
    if os.path.exists(tmp_path):
        os.remove(tmp_path)
    pq.write_table(table, tmp_path, compression=PARQUET_COMPRESSION)
    os.replace(tmp_path, path)


def export_parquet(store: BarStore, start_ms: int, end_ms: int, path: str, logger: logging.Logger,
                   window_ms: Optional[int] = None) -> Optional[str]:
    """Write the minutes in [start_ms, end_ms) (or their window_ms aggregates) to a Parquet file.
    Returns the file path, or None when the range holds no data.
    """
    minutes = read_minutes(store, floor_minute(start_ms), end_ms, logger)
    if not minutes:
        logger.info(f"No data between {ms_to_iso(start_ms)} and {ms_to_iso(end_ms)}; nothing exported.")
        return None
    bars = fold_minutes(minutes, window_ms) if window_ms else minutes
    df = bars_to_frame(bars, logger)
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    _atomic_write_parquet(pa.Table.from_pandas(df, preserve_index=False), path)
    logger.info(f"Exported {len(df)} bar(s) -> {path}")
    return path


def build_health(store: BarStore) -> Dict[str, Any]:
    watermark = store.get_watermark()
    last_closed = floor_minute(utc_now_ms()) - MINUTE_MS
    try:
        store_bytes = os.path.getsize(store.path)
    except OSError:
        store_bytes = None
    return {
        "symbol": SYMBOL,
        "timeframe": TIMEFRAME,
        "store_file": os.path.abspath(store.path),
        "store_bytes": store_bytes,
        "watermark_ms": watermark,
        "watermark_iso": ms_to_iso(watermark) if watermark else None,
        "minute_lag": max(0, (last_closed - watermark) // MINUTE_MS) if watermark else None,
        "updated_utc": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }


# --------------------------
# CLI
# --------------------------

def _parse_args(argv: List[str]):
    import argparse
    p = argparse.ArgumentParser(description=f"Binance {TIMEFRAME} minute-bar sync and aggregation")
    p.add_argument("--store", default=STORE_FILE, help="Path of the SQLite bar store")
    p.add_argument("--quiet", action="store_true", help="Reduce console logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("sync", help="Run one synchronize pass and exit")

    p_live = sub.add_parser("live", help="Periodic background sync with a foreground bar refresh loop")
    p_live.add_argument("--window-minutes", type=int, default=AGG_WINDOW_MINUTES)
    p_live.add_argument("--count", type=int, default=AGG_BAR_COUNT)
    p_live.add_argument("--refresh", type=float, default=REFRESH_INTERVAL_SEC, help="Seconds between bar refreshes")

    p_bars = sub.add_parser("bars", help="Print aggregated bars from the store")
    p_bars.add_argument("--window-minutes", type=int, default=AGG_WINDOW_MINUTES)
    p_bars.add_argument("--count", type=int, default=AGG_BAR_COUNT, help="Number of windows to look back")
    p_bars.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    sub.add_parser("verify", help="Check stored minutes for gaps and watermark consistency")

    p_export = sub.add_parser("export", help="Export minute (or aggregated) bars to Parquet")
    p_export.add_argument("--start", required=True, help="Start ISO time (UTC), inclusive")
    p_export.add_argument("--end", default=None, help="End ISO time (UTC), exclusive. Default now")
    p_export.add_argument("--out", required=True, help="Output .parquet path")
    p_export.add_argument("--window-minutes", type=int, default=None, help="Aggregate before export")

    sub.add_parser("status", help="Print store health as JSON")

    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    logger = setup_logging(verbose=not args.quiet)

    if args.cmd == "live":
        try:
            live(logger, store_file=args.store, window_minutes=args.window_minutes,
                 bar_count=args.count, refresh_sec=args.refresh)
        except KeyboardInterrupt:
            logger.info("Interrupted by user. Exiting.")
        return 0

    with BarStore(args.store, logger) as store:
        if args.cmd == "sync":
            client = BinanceKlineClient(logger=logger)
            try:
                SyncEngine(store, client, logger=logger).synchronize()
            except LoaderError:
                return 2
            finally:
                client.close()
        elif args.cmd == "bars":
            try:
                bars = aggregate(store, args.count, args.window_minutes * MINUTE_MS, logger=logger)
            except (NoDataError, ValueError) as e:
                logger.error(str(e))
                return 2
            if args.json:
                print(json.dumps([b.to_dict() for b in bars], indent=2))
            else:
                print(bars_to_frame(bars, logger).to_string(index=False))
        elif args.cmd == "verify":
            ok, _ = verify_continuity(store, logger)
            return 0 if ok else 2
        elif args.cmd == "export":
            start_ms = iso_to_ms(args.start)
            end_ms = iso_to_ms(args.end) if args.end else utc_now_ms()
            window_ms = args.window_minutes * MINUTE_MS if args.window_minutes else None
            out = export_parquet(store, start_ms, end_ms, args.out, logger, window_ms=window_ms)
            return 0 if out else 2
        elif args.cmd == "status":
            print(json.dumps(build_health(store), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
