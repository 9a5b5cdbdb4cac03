#!/usr/bin/python3
# Copyright (c) 2024 by Fred Morris Tacoma WA
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import unittest
import threading
from concurrent.futures import ThreadPoolExecutor

import counter.rates as rates

NAN = float('nan')
KEY = 'interface;rtr1;xe-0/0/0;input'

class TestBaseline(unittest.TestCase):
    """Baselines and unknown keys."""

    def setUp(self):
        self.tracker = rates.RateTracker()
        return

    def test_unknown_key(self):
        """A key which was never seen fails."""
        rate, ok, failure = self.tracker.compute_rate(KEY, 1000, 10.0)
        self.assertFalse(ok)
        self.assertIs(failure, rates.UnknownKey)
        self.assertIsNone(rate)
        self.assertNotIn(KEY, self.tracker)
        return

    def test_baseline_then_rate(self):
        """The first rate after a baseline succeeds."""
        self.tracker.record_baseline(KEY, 60, rates.DEFAULT_MIN_RATE, rates.DEFAULT_MAX_RATE, 1000, 100.0)
        result = self.tracker.compute_rate(KEY, 1060, 700.0)
        self.assertTrue(result.ok)
        self.assertIsNone(result.failure)
        self.assertEqual(result.rate, 10.0)
        return

    def test_unchanged_counter(self):
        """No increase is a rate of zero, which is within the default bounds."""
        self.tracker.record_baseline(KEY, 60, rates.DEFAULT_MIN_RATE, rates.DEFAULT_MAX_RATE, 1000, 100.0)
        result = self.tracker.compute_rate(KEY, 1060, 100.0)
        self.assertTrue(result.ok)
        self.assertEqual(result.rate, 0.0)
        return

    def test_overwrite(self):
        """A second baseline replaces everything about the first."""
        self.tracker.record_baseline(KEY, 60, 0, 100, 1000, 100.0)
        self.tracker.record_baseline(KEY, 10, 5, 50, 2000, 500.0)
        measurement = self.tracker.get(KEY)
        self.assertEqual(
            (measurement.interval, measurement.min_rate, measurement.max_rate, measurement.timestamp, measurement.value),
            (10, 5, 50, 2000, 500.0)
        )
        self.assertEqual(len(self.tracker), 1)
        result = self.tracker.compute_rate(KEY, 2010, 600.0)
        self.assertTrue(result.ok)
        self.assertEqual(result.rate, 10.0)
        return

    def test_independent_trackers(self):
        """Trackers don't share state."""
        self.tracker.record_baseline(KEY, 60, 0, 100, 1000, 100.0)
        self.assertNotIn(KEY, rates.RateTracker())
        return

class TestWraparound(unittest.TestCase):
    """Counters which appear to go down have wrapped."""

    def setUp(self):
        self.tracker = rates.RateTracker()
        return

    def test_32_bit(self):
        """A previous value which fits in 32 bits wraps at 2**32."""
        self.tracker.record_baseline(KEY, 60, 0, 1e15, 1000, 4294967290.0)
        result = self.tracker.compute_rate(KEY, 1010, 5.0)
        self.assertTrue(result.ok)
        self.assertAlmostEqual(result.rate, 1.1)
        return

    def test_64_bit(self):
        """A previous value too big for 32 bits wraps at 2**64."""
        previous = float(2**32 + 100)
        self.tracker.record_baseline(KEY, 60, 0, 1e20, 1000, previous)
        result = self.tracker.compute_rate(KEY, 1010, 50.0)
        self.assertTrue(result.ok)
        self.assertAlmostEqual(result.rate / ((2**64 - 1 - previous + 50.0) / 10), 1.0)
        return

    def test_64_bit_out_of_range(self):
        """The same wrap with the default bounds is rejected."""
        self.tracker.record_baseline(KEY, 60, 0, 1e15, 1000, float(2**32 + 100))
        result = self.tracker.compute_rate(KEY, 1010, 50.0)
        self.assertIs(result.failure, rates.RateOutOfRange)
        return

    def test_delta(self):
        self.assertEqual(rates.counter_delta(10.0, 15.0), 5.0)
        self.assertEqual(rates.counter_delta(float(rates.MAX_UINT32), 0.0), 1.0)
        self.assertEqual(rates.counter_delta(4294967290.0, 5.0), 11.0)
        return

class TestRejection(unittest.TestCase):
    """Rejected samples still become the new baseline."""

    def setUp(self):
        self.tracker = rates.RateTracker()
        self.tracker.record_baseline(KEY, 60, 0, 100, 1000, 100.0)
        return

    def assert_advanced(self, timestamp, value):
        measurement = self.tracker.get(KEY)
        self.assertEqual(measurement.timestamp, timestamp)
        if value != value:
            self.assertNotEqual(measurement.value, measurement.value)
        else:
            self.assertEqual(measurement.value, value)
        return

    def test_gap_too_large(self):
        """Six intervals or more is too large."""
        result = self.tracker.compute_rate(KEY, 1360, 200.0)
        self.assertIs(result.failure, rates.GapTooLarge)
        self.assertIsNone(result.rate)
        self.assert_advanced(1360, 200.0)
        result = self.tracker.compute_rate(KEY, 1370, 300.0)
        self.assertTrue(result.ok)
        self.assertEqual(result.rate, 10.0)
        return

    def test_gap_just_under(self):
        """Just under six intervals is fine."""
        result = self.tracker.compute_rate(KEY, 1359, 459.0)
        self.assertTrue(result.ok)
        self.assertEqual(result.rate, 1.0)
        return

    def test_gap_not_positive(self):
        """Duplicate and backwards timestamps are rejected."""
        result = self.tracker.compute_rate(KEY, 1000, 200.0)
        self.assertIs(result.failure, rates.GapTooSmall)
        self.assert_advanced(1000, 200.0)
        result = self.tracker.compute_rate(KEY, 990, 300.0)
        self.assertIs(result.failure, rates.GapTooSmall)
        self.assert_advanced(990, 300.0)
        return

    def test_nan_value(self):
        """A NaN sample is rejected, and becomes the baseline."""
        result = self.tracker.compute_rate(KEY, 1010, NAN)
        self.assertIs(result.failure, rates.InvalidValue)
        self.assert_advanced(1010, NAN)
        return

    def test_gap_checked_before_nan(self):
        """A NaN sample with a duplicate timestamp is a gap failure."""
        result = self.tracker.compute_rate(KEY, 1000, NAN)
        self.assertIs(result.failure, rates.GapTooSmall)
        self.assert_advanced(1000, NAN)
        return

    def test_nan_previous(self):
        """A NaN baseline poisons exactly one sample."""
        self.tracker.compute_rate(KEY, 1010, NAN)
        result = self.tracker.compute_rate(KEY, 1020, 500.0)
        self.assertIs(result.failure, rates.InvalidValue)
        self.assert_advanced(1020, 500.0)
        result = self.tracker.compute_rate(KEY, 1030, 600.0)
        self.assertTrue(result.ok)
        self.assertEqual(result.rate, 10.0)
        return

    def test_out_of_range(self):
        """A rate of 150 is above 100."""
        result = self.tracker.compute_rate(KEY, 1010, 1600.0)
        self.assertIs(result.failure, rates.RateOutOfRange)
        self.assert_advanced(1010, 1600.0)
        return

    def test_bounds_inclusive(self):
        """Rates equal to the bounds are accepted."""
        result = self.tracker.compute_rate(KEY, 1010, 1100.0)
        self.assertTrue(result.ok)
        self.assertEqual(result.rate, 100.0)
        result = self.tracker.compute_rate(KEY, 1020, 1100.0)
        self.assertTrue(result.ok)
        self.assertEqual(result.rate, 0.0)
        return

    def test_below_minimum(self):
        self.tracker.record_baseline(KEY, 60, 5, 100, 1000, 100.0)
        result = self.tracker.compute_rate(KEY, 1010, 110.0)
        self.assertIs(result.failure, rates.RateOutOfRange)
        return

    def test_failure_names(self):
        self.assertEqual(
            [ failure.name for failure in rates.FAILURES ],
            [ 'UnknownKey', 'GapTooLarge', 'GapTooSmall', 'InvalidValue', 'RateOutOfRange' ]
        )
        return

class TestConcurrency(unittest.TestCase):
    """Many threads, one tracker."""

    def setUp(self):
        self.tracker = rates.RateTracker()
        return

    def test_distinct_keys(self):
        """Each key gets its own rate regardless of ordering."""
        keys = [ 'key{}'.format(i) for i in range(64) ]
        for i,key in enumerate(keys):
            self.tracker.record_baseline(key, 60, 0, 1e15, 1000, 0.0)

        def task(i):
            return self.tracker.compute_rate(keys[i], 1010, float(i * 10))

        with ThreadPoolExecutor(8) as executor:
            results = list(executor.map(task, range(len(keys))))

        for i,result in enumerate(results):
            self.assertTrue(result.ok)
            self.assertEqual(result.rate, float(i))
        return

    def test_same_key(self):
        """Concurrent updates never see a torn baseline.

        Every sample is (t, t * 10), so every delta against a whole baseline is
        a rate of exactly 10 whichever order they land in, as long as the gap is
        positive.
        """
        self.tracker.record_baseline(KEY, 1000000, 0, 1e15, 0, 0.0)
        barrier = threading.Barrier(8)

        def task(offset):
            barrier.wait()
            results = []
            for t in range(1 + offset, 4001, 8):
                results.append(self.tracker.compute_rate(KEY, t, float(t * 10)))
            return results

        with ThreadPoolExecutor(8) as executor:
            results = [ result for batch in executor.map(task, range(8)) for result in batch ]

        self.assertEqual(len(results), 4000)
        for result in results:
            if result.ok:
                self.assertAlmostEqual(result.rate, 10.0)
            else:
                self.assertIs(result.failure, rates.GapTooSmall)
        return

if __name__ == '__main__':
    unittest.main(verbosity=2)
