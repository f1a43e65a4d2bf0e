import logging
import unittest

try:
    import ccxt  # noqa: F401
    HAS_CCXT = True
except Exception:
    HAS_CCXT = False

import minute_loader as loader
from ohlcv import MINUTE_MS, MinuteBar, iso_to_ms

T0 = iso_to_ms("2024-03-01T12:00:00Z")


def kline(t, o="42000.10", h="42010.00", l="41990.50", c="42005.25", v="12.345"):
    # Binance spot kline layout: 12 fields, prices as strings
    return [t, o, h, l, c, v, t + 59_999, "518000.0", 321, "6.1", "256000.0", "0"]


class StubExchange:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.params = []

    def publicGetKlines(self, params):
        self.params.append(params)
        if self.error is not None:
            raise self.error
        return self.rows


class ParseKlineRowsTest(unittest.TestCase):
    def setUp(self):
        self.logger = logging.getLogger("minuteloader.test")

    def test_rows_become_minute_bars(self):
        bars = loader.parse_kline_rows([kline(T0), kline(T0 + MINUTE_MS, c="42001")], self.logger)
        self.assertEqual(bars[0], MinuteBar(T0, 42000.10, 42010.00, 41990.50, 42005.25, 12.345))
        self.assertEqual(bars[1].time, T0 + MINUTE_MS)
        self.assertEqual(bars[1].close, 42001.0)

    def test_malformed_rows_are_skipped(self):
        rows = [[T0, "1", "2"], kline(T0 + MINUTE_MS, o="n/a"), [], kline(T0 + 2 * MINUTE_MS)]
        with self.assertLogs("minuteloader.test", level="WARNING"):
            bars = loader.parse_kline_rows(rows, self.logger)
        self.assertEqual([b.time for b in bars], [T0 + 2 * MINUTE_MS])

    def test_string_open_time_is_coerced(self):
        bars = loader.parse_kline_rows([kline(str(T0))], self.logger)
        self.assertEqual(bars[0].time, T0)


class BinanceKlineClientTest(unittest.TestCase):
    def test_fetch_sends_limit_and_end_time(self):
        ex = StubExchange(rows=[kline(T0), kline(T0 + MINUTE_MS)])
        client = loader.BinanceKlineClient(symbol="BTCUSDT", exchange=ex)

        bars = client.fetch(2, T0 + MINUTE_MS + 30_000)

        self.assertEqual(ex.params, [{
            "symbol": "BTCUSDT",
            "interval": "1m",
            "limit": 2,
            "endTime": T0 + MINUTE_MS + 30_000,
        }])
        self.assertEqual([b.time for b in bars], [T0, T0 + MINUTE_MS])

    def test_count_outside_limits_is_rejected(self):
        client = loader.BinanceKlineClient(exchange=StubExchange())
        with self.assertRaises(ValueError):
            client.fetch(0, T0)
        with self.assertRaises(ValueError):
            client.fetch(loader.MAX_CHUNK_MINUTES + 1, T0)

    @unittest.skipUnless(HAS_CCXT, "ccxt is required for transport error mapping")
    def test_exchange_errors_become_transport_errors(self):
        client = loader.BinanceKlineClient(exchange=StubExchange(error=ccxt.NetworkError("timed out")))
        with self.assertRaises(loader.TransportError) as ctx:
            client.fetch(10, T0)
        self.assertIn("timed out", str(ctx.exception))


if __name__ == "__main__":
    unittest.main(verbosity=2)
