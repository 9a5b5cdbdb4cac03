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

"""Rates from Monotonic Counters.

Hardware counters (interface octets, packets and the like) only ever go up,
until they overflow their width and start over near zero. What we want to
report is the rate: the difference between two readings divided by the time
between them.

Basic order of operations is to allocate a RateTracker, call record_baseline()
the first time a series is seen and compute_rate() every time after that,
then test ok and rate:

    tracker = RateTracker()
    tracker.record_baseline('interface;rtr1;xe-0/0/0;input', 60, 0, MAX_RATE, ts, value)
    ...
    result = tracker.compute_rate('interface;rtr1;xe-0/0/0;input', ts, value)
    if result.ok:
        print(result.rate)

Failures are returned, not raised. compute_rate() always advances the stored
sample, whether a rate was produced or not; otherwise one stale sample would
spoil every delta after it.
"""

import threading
from math import isnan

DEFAULT_MIN_RATE = 0
# 1 Peta (e.g. 1 Pbps)
DEFAULT_MAX_RATE = 1000 * 1000 * 1000 * 1000 * 1000

# A sample more than this many intervals after the previous one is discarded.
MAX_GAP_INTERVALS = 6

MAX_UINT32 = 2**32 - 1
COUNTER32_MODULUS = 2**32
COUNTER64_MODULUS = 2**64

class FailureType(object):
    """Base class for compute_rate() failure singletons.

    Like None, these are compared with "is":

        if result.failure is GapTooLarge:
            ...
    """
    @property
    def name(self):
        return type(self).__name__[:-len('Type')]

    def __repr__(self):
        return '<{}>'.format(self.name)

class UnknownKeyType(FailureType):
    """No baseline was recorded for the key. The caller should have called
    record_baseline() first.

    The singleton created with this type is UnknownKey.
    """
    pass

UnknownKey = UnknownKeyType()

class GapTooLargeType(FailureType):
    """The sample is too long after the previous one to be trusted.

    The singleton created with this type is GapTooLarge.
    """
    pass

GapTooLarge = GapTooLargeType()

class GapTooSmallType(FailureType):
    """The sample is not later than the previous one (duplicate timestamp
    or clock skew).

    The singleton created with this type is GapTooSmall.
    """
    pass

GapTooSmall = GapTooSmallType()

class InvalidValueType(FailureType):
    """Either this sample or the previous one is NaN.

    The singleton created with this type is InvalidValue.
    """
    pass

InvalidValue = InvalidValueType()

class RateOutOfRangeType(FailureType):
    """The computed rate is outside of [min_rate, max_rate].

    The singleton created with this type is RateOutOfRange.
    """
    pass

RateOutOfRange = RateOutOfRangeType()

FAILURES = ( UnknownKey, GapTooLarge, GapTooSmall, InvalidValue, RateOutOfRange )

#
# Sample validation. These don't touch any state.
#

def gap_too_large(gap, interval):
    return gap >= interval * MAX_GAP_INTERVALS

def gap_too_small(gap):
    return gap <= 0

def is_invalid(*values):
    return any( isnan(value) for value in values )

def counter_delta(previous, value):
    """The increase from previous to value.

    A decrease is taken to mean that the counter wrapped, never that it was
    reset. The width of the counter is a guess based on the previous value:
    if it wouldn't fit in 32 bits the counter must be 64 bits wide.

    NOTE: A genuine reset (device reboot) of a counter with a large previous
    value looks exactly like a wrap and produces an enormous delta. The rate
    bounds are what catch that.

    The wrapped delta is 2**32 - previous + value, the number of counts that
    actually elapsed: previous 4294967290 and value 5 is a delta of 11. The
    older 2**32 - 1 - previous + value form gives 10 for the same readings,
    one short. For 64 bit counters the two are the same double.
    """
    if value >= previous:
        return value - previous
    if previous > MAX_UINT32:
        return COUNTER64_MODULUS - previous + value
    return COUNTER32_MODULUS - previous + value

def out_of_range(rate, min_rate, max_rate):
    return rate < min_rate or rate > max_rate

class Measurement(object):
    """The last sample seen for a series, along with how to judge the next one."""

    def __init__(self, interval, timestamp, min_rate, max_rate, value):
        self.interval = interval
        self.min_rate = min_rate
        self.max_rate = max_rate
        self.timestamp = timestamp
        self.value = value
        self.lock = threading.Lock()
        return

    def __repr__(self):
        return '<{} interval={} min={:g} max={:g} timestamp={} value={:g}>'.format(
                    type(self).__name__,
                    self.interval, self.min_rate, self.max_rate, self.timestamp, self.value
                )

class RateResult(object):
    """What compute_rate() returns.

    It can be unpacked:

        rate, ok, failure = tracker.compute_rate(key, ts, value)

    rate is None unless ok is True. reason is a human readable explanation
    suitable for logging.
    """
    def __init__(self, rate=None, failure=None, reason=''):
        self.rate = rate
        self.failure = failure
        self.reason = reason
        return

    @property
    def ok(self):
        return self.failure is None

    def __iter__(self):
        return iter( (self.rate, self.ok, self.failure) )

    def __repr__(self):
        if self.ok:
            return '<{} rate={:g}>'.format(type(self).__name__, self.rate)
        return '<{} {} {}>'.format(type(self).__name__, self.failure.name, self.reason)

class RateTracker(object):
    """Keyed store of the last sample for each series.

    Series are created the first time they're seen and are never forgotten;
    a long running agent sees a stable set of them. A restart forgets all of
    them, and the first sample of every series is a baseline again.

    Threadsafety
    ------------

    Each Measurement has its own lock, so that two updates for the same key
    can't compute a delta against a half updated baseline. The lock on the
    dictionary itself is only held long enough to find or insert the
    Measurement, so different keys don't wait on each other.
    """

    def __init__(self):
        self.values = dict()
        self.lock = threading.Lock()
        return

    def __contains__(self, key):
        with self.lock:
            return key in self.values

    def __len__(self):
        with self.lock:
            return len(self.values)

    def get(self, key):
        """Return the Measurement for key, or None."""
        with self.lock:
            return self.values.get(key)

    def record_baseline(self, key, interval, min_rate, max_rate, timestamp, value):
        """Set (or replace) the Measurement for key.

        Everything is replaced, nothing is merged with what was there before.
        """
        with self.lock:
            measurement = self.values.get(key)
            if measurement is None:
                self.values[key] = Measurement(interval, timestamp, min_rate, max_rate, value)
                return
        with measurement.lock:
            measurement.interval = interval
            measurement.min_rate = min_rate
            measurement.max_rate = max_rate
            measurement.timestamp = timestamp
            measurement.value = value
        return

    def compute_rate(self, key, timestamp, value):
        """Compute the rate since the last sample for key.

        Returns a RateResult. The Measurement is updated with this sample before
        any of the checks are made.
        """
        measurement = self.get(key)
        if measurement is None:
            return RateResult(
                    failure=UnknownKey,
                    reason='cannot update measurement for non-existent key {}'.format(key)
                )

        with measurement.lock:
            previous = measurement.value
            gap = timestamp - measurement.timestamp
            measurement.timestamp = timestamp
            measurement.value = value
            interval = measurement.interval
            min_rate = measurement.min_rate
            max_rate = measurement.max_rate

        if gap_too_large(gap, interval):
            return RateResult(
                    failure=GapTooLarge,
                    reason='timestamp difference {} is too large; discarding update'.format(gap)
                )
        if gap_too_small(gap):
            return RateResult(
                    failure=GapTooSmall,
                    reason='timestamp difference {} is not positive; discarding update'.format(gap)
                )
        if is_invalid(value, previous):
            return RateResult(
                    failure=InvalidValue,
                    reason='cannot do calculations on NaN values ({:g}, {:g})'.format(value, previous)
                )

        rate = counter_delta(previous, value) / gap

        if out_of_range(rate, min_rate, max_rate):
            return RateResult(
                    failure=RateOutOfRange,
                    reason='rate {:g} is outside the specified range [{:g},{:g}]'.format(rate, min_rate, max_rate)
                )

        return RateResult(rate)
