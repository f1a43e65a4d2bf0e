import json
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout
from io import StringIO

import pandas as pd

try:
    import pyarrow  # noqa: F401
    HAS_PARQUET = True
except Exception:
    HAS_PARQUET = False

import minute_loader as loader
from bar_store import BarStore
from ohlcv import BAR_COLUMNS, MINUTE_MS, MinuteBar, iso_to_ms

BASE = iso_to_ms("2024-03-01T12:00:00Z")


def bar(k: int) -> MinuteBar:
    return MinuteBar(time=BASE + k * MINUTE_MS, open=50.0 + k, high=51.0 + k, low=49.0 + k, close=50.5 + k, volume=2.0)


class StoreToolsTestBase(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="loader_tools_")
        self._orig_log_dir, self._orig_log_file = loader.LOG_DIR, loader.LOG_FILE
        loader.LOG_DIR = os.path.join(self.tempdir, "logs")
        loader.LOG_FILE = os.path.join(loader.LOG_DIR, "loader.log")
        self.logger = loader.setup_logging(verbose=False)
        self.store_path = os.path.join(self.tempdir, "bars.sqlite3")
        self.store = BarStore(self.store_path, self.logger)

    def tearDown(self):
        self.store.close()
        loader.shutdown_logging()
        loader.LOG_DIR, loader.LOG_FILE = self._orig_log_dir, self._orig_log_file
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def seed(self, ks, watermark=None):
        for k in ks:
            b = bar(k)
            self.store.put(b.time, b)
        last = bar(max(ks)).time
        self.store.set_watermark(watermark if watermark is not None else last)
        self.store.flush()


class VerifyContinuityTest(StoreToolsTestBase):
    def test_contiguous_store_verifies(self):
        self.seed(range(30))
        ok, gaps = loader.verify_continuity(self.store, self.logger)
        self.assertTrue(ok)
        self.assertEqual(gaps, [])

    def test_gaps_are_reported(self):
        self.seed([k for k in range(30) if k not in (10, 11, 20)])
        ok, gaps = loader.verify_continuity(self.store, self.logger)
        self.assertFalse(ok)
        self.assertEqual(gaps, [(bar(9).time, bar(12).time), (bar(19).time, bar(21).time)])

    def test_watermark_mismatch_fails(self):
        self.seed(range(5), watermark=bar(2).time)
        ok, gaps = loader.verify_continuity(self.store, self.logger)
        self.assertFalse(ok)
        self.assertEqual(gaps, [])

    def test_empty_store_verifies(self):
        ok, gaps = loader.verify_continuity(self.store, self.logger)
        self.assertTrue(ok)
        self.assertEqual(gaps, [])


@unittest.skipUnless(HAS_PARQUET, "pyarrow is required for Parquet export tests")
class ExportParquetTest(StoreToolsTestBase):
    def test_minute_export_round_trips(self):
        self.seed(range(20))
        out = os.path.join(self.tempdir, "export", "minutes.parquet")

        path = loader.export_parquet(self.store, bar(5).time, bar(15).time, out, self.logger)

        self.assertEqual(path, out)
        self.assertFalse(os.path.exists(out + ".tmp"))
        df = pd.read_parquet(out)
        self.assertEqual(list(df.columns), BAR_COLUMNS)
        self.assertEqual(len(df), 10)
        self.assertTrue(pd.api.types.is_integer_dtype(df["time"]))
        self.assertEqual(int(df.iloc[0]["time"]), bar(5).time)
        self.assertTrue((df["time"].diff().dropna() == MINUTE_MS).all())

    def test_aggregated_export(self):
        self.seed(range(47))
        out = os.path.join(self.tempdir, "bars_15m.parquet")

        loader.export_parquet(self.store, BASE, BASE + 47 * MINUTE_MS, out, self.logger, window_ms=15 * MINUTE_MS)

        df = pd.read_parquet(out)
        self.assertEqual(len(df), 4)
        self.assertEqual(df["volume"].tolist(), [30.0, 30.0, 30.0, 4.0])

    def test_empty_range_exports_nothing(self):
        self.seed(range(3))
        out = os.path.join(self.tempdir, "none.parquet")
        self.assertIsNone(loader.export_parquet(self.store, BASE - 60 * MINUTE_MS, BASE - 30 * MINUTE_MS, out, self.logger))
        self.assertFalse(os.path.exists(out))


class CommandLineTest(StoreToolsTestBase):
    def test_status_prints_health_json(self):
        self.seed(range(3))
        self.store.close()
        buf = StringIO()
        with redirect_stdout(buf):
            code = loader.main(["--store", self.store_path, "--quiet", "status"])
        self.store = BarStore(self.store_path, self.logger)

        self.assertEqual(code, 0)
        health = json.loads(buf.getvalue())
        self.assertEqual(health["watermark_ms"], bar(2).time)
        self.assertGreater(health["minute_lag"], 0)

    def test_verify_exit_code_reflects_gaps(self):
        self.seed([0, 1, 3])
        self.store.close()
        code = loader.main(["--store", self.store_path, "--quiet", "verify"])
        self.store = BarStore(self.store_path, self.logger)
        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main(verbosity=2)
