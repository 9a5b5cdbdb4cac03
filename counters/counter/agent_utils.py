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

"""Utilities for the Counter Agent."""

import logging
import json
import re
import threading
from math import isfinite
from time import time

from .rates import UnknownKey, FAILURES, DEFAULT_MIN_RATE, DEFAULT_MAX_RATE

# Line Protocol
# ++++++++++++++++
#
#   measurement[,tag=value...] field=value[,field=value...] [timestamp]
#
ESCAPED = r'(?:\\.|[^ ,=\\])+'

LINE_SECTIONS = re.compile(
        r'^(?P<series>(?:\\.|[^ \\])+)'
        r' +(?P<fields>(?:"(?:\\.|[^"\\])*"|\\.|[^ "\\])+)'
        r'(?: +(?P<timestamp>-?\d+))?\s*$'
    )

TOKEN_SPECS = {
        'FIELD'     : '({})=("(?:\\\\.|[^"\\\\])*"|[^ ,"]+)'.format(ESCAPED),
        'TAG'       : '({})=({})'.format(ESCAPED, ESCAPED),
        'COMMA'     : ',',
        'BAD'       : '(.)'
    }

TOKEN_SETS = dict(
        TAG_TOKENS          = ( 'TAG', 'COMMA', 'BAD' ),
        FIELD_TOKENS        = ( 'FIELD', 'COMMA', 'BAD' )
    )

for k in TOKEN_SETS.keys():
    TOKEN_SETS[k] = re.compile(
        '|'.join('(?P<%s>%s)' % (spec, TOKEN_SPECS[spec]) for spec in TOKEN_SETS[k])
    )
for k in TOKEN_SPECS.keys():
    TOKEN_SPECS[k] = re.compile(TOKEN_SPECS[k])

MEASUREMENT = re.compile(r'^((?:\\.|[^,\\])+)(.*)$')
UNESCAPE = re.compile(r'\\([, ="\\])')
INTEGER = re.compile(r'^-?\d+i$')
UNSIGNED = re.compile(r'^\d+u$')
TRUE = { 't', 'T', 'true', 'True', 'TRUE' }
FALSE = { 'f', 'F', 'false', 'False', 'FALSE' }

PRECISION = dict( s=1, ms=10**3, us=10**6, ns=10**9 )
# ----------------

DEFAULT_INTERVAL = 60
DEFAULT_NODE_TAG = 'device'
KEY_DELIMITER = ';'
BATCH_SIZE = 50

class ParseError(Exception):
    pass

class OutputError(Exception):
    pass

class NotNumericError(TypeError):
    pass

def unescape(s):
    return UNESCAPE.sub(r'\1', s)

def field_value(raw):
    """Convert a line protocol field value to a Python value."""
    if raw.startswith('"'):
        return unescape(raw[1:-1])
    if INTEGER.match(raw) or UNSIGNED.match(raw):
        return int(raw[:-1])
    if raw in TRUE:
        return True
    if raw in FALSE:
        return False
    try:
        value = float(raw)
    except ValueError:
        raise ParseError('Invalid field value "{}"'.format(raw))
    # float() accepts nan and inf, line protocol doesn't.
    if not isfinite(value):
        raise ParseError('Invalid field value "{}"'.format(raw))
    return value

def tokens(token_set, text):
    """Yield (key, value) pairs, enforcing that they're separated by commas."""
    expect_pair = True
    for matchop in re.finditer(TOKEN_SETS[token_set], text):
        spec = matchop.lastgroup
        if spec == 'BAD':
            raise ParseError('Syntax error in "{}"'.format(text))
        if (spec == 'COMMA') == expect_pair:
            raise ParseError('Misplaced comma in "{}"'.format(text))
        expect_pair = not expect_pair
        if spec == 'COMMA':
            continue
        matched = TOKEN_SPECS[spec].match(matchop.group(spec))
        yield matched.group(1), matched.group(2)
    if expect_pair:
        raise ParseError('Missing key=value in "{}"'.format(text))
    return

class Metric(object):
    """A single line of line protocol."""
    def __init__(self, name, tags, fields, timestamp):
        self.name = name
        self.tags = tags
        self.fields = fields
        self.timestamp = timestamp
        return

    def __repr__(self):
        return '<{} {} {} {} {}>'.format(type(self).__name__, self.name, self.tags, self.fields, self.timestamp)

def parse_line(line, precision='ns', now=None):
    """Parse one line of line protocol.

    Returns a Metric, or None for blank lines and comments. The timestamp is
    converted to integer epoch seconds; if there isn't one, now (or the current
    time) is used.

    Raises ParseError if the line is malformed.
    """
    line = line.strip()
    if not line or line.startswith('#'):
        return None

    sections = LINE_SECTIONS.match(line)
    if not sections:
        raise ParseError('Malformed line "{}"'.format(line))

    series = MEASUREMENT.match(sections.group('series'))
    name = unescape(series.group(1))
    tags = dict()
    if series.group(2):
        if not series.group(2).startswith(','):
            raise ParseError('Malformed measurement "{}"'.format(sections.group('series')))
        for k,v in tokens('TAG_TOKENS', series.group(2)[1:]):
            tags[unescape(k)] = unescape(v)

    fields = dict()
    for k,v in tokens('FIELD_TOKENS', sections.group('fields')):
        fields[unescape(k)] = field_value(v)

    if sections.group('timestamp') is not None:
        timestamp = int(sections.group('timestamp')) // PRECISION[precision]
    else:
        timestamp = int(now if now is not None else time())

    return Metric(name, tags, fields, timestamp)

def as_number(raw):
    """Normalize a raw field value to a float.

    Only integers and floats are numbers. Booleans are integers as far as Python
    is concerned, but not as far as we are.
    """
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise NotNumericError('{!r} is not a number'.format(raw))
    return float(raw)

class Data(object):
    """A TSDS measurement record."""
    def __init__(self, type_, timestamp, interval):
        self.type = type_
        self.time = timestamp
        self.interval = interval
        self.meta = dict()
        self.values = dict()
        return

    def as_dict(self):
        return dict( type=self.type, time=self.time, interval=self.interval,
                     meta=self.meta, values=self.values
                   )

    def to_json(self):
        """NaN and infinity aren't JSON. They're reported as null."""
        record = self.as_dict()
        record['values'] = { k:( None if isinstance(v, float) and not isfinite(v) else v )
                             for k,v in self.values.items()
                           }
        return json.dumps(record, allow_nan=False)

class RateStatistics(object):
    """Tallies rate outcomes, for periodic reporting by the agent."""

    CATEGORIES = ('rate', 'baseline', 'not_numeric') + tuple( failure.name for failure in FAILURES )

    def __init__(self):
        self.lock = threading.Lock()
        self.counts = { k:0 for k in self.CATEGORIES }
        return

    def add(self, category):
        with self.lock:
            self.counts[category] += 1
        return

    def tally(self, result):
        self.add( result.ok and 'rate' or result.failure.name )
        return

    def snapshot(self):
        with self.lock:
            return self.counts.copy()

    def report(self):
        return ' '.join( '{}={}'.format(k,v) for k,v in self.snapshot().items() )

class OutputRule(object):
    """An output rule.

    A rule consists of the following components:

        measurement The TSDS measurement type, e.g. "interface".
        interval    The sampling interval in seconds. Rates which arrive more than
                    six intervals apart are discarded.
        sensors     A list of "alias /resource/path" strings. Tags and fields named
                    by a resource path are reported to TSDS using the alias.
        metadata    The metadata aliases (besides node) which distinguish one
                    series from another, e.g. "intf".
        rates       The value aliases which are counters and should be reported
                    as rates.
        metric      If defined, only line protocol measurements with this name are
                    processed by the rule.
        node_tag    The tag supplying the node name. Default "device".
        min_rate    Rates below this are rejected. Default 0.
        max_rate    Rates above this are rejected. Default 10**15.

    The first six can be supplied positionally. All of them can be defaulted or
    redefined by using outputs.define(). See the sample configuration.

    Sensors
    -------

    Sensors map resource paths to what TSDS calls them:

        sensors = [ 'intf /interfaces/interface/name',
                    'input /interfaces/interface/state/counters/in-octets'
                  ]

    Each sensor string is exactly an alias and a path separated by whitespace;
    anything else (a missing path, or trailing words after the path) is a
    ParseError when the output is defined rather than being silently dropped.

    A metric only produces data if every sensor is accounted for. The node is
    always reported in the metadata, so it is not listed.

    Rates
    -----

    Each rate is tracked as its own series. The series key is made of the
    measurement type, the node, the metadata values and the name of the value.
    The first time a series is seen there is nothing to compute a rate against,
    and the value is reported as null; the same goes for any rate which fails
    to compute (stale, NaN, out of range).
    """

    POSITIONAL_ARGS = ('measurement', 'interval', 'sensors', 'metadata', 'rates', 'metric')
    DEFAULTS = dict(
            interval = DEFAULT_INTERVAL,
            metadata = (),
            rates = (),
            metric = None,
            node_tag = DEFAULT_NODE_TAG,
            min_rate = DEFAULT_MIN_RATE,
            max_rate = DEFAULT_MAX_RATE
        )

    def __init__(self, defaults, *args, **kwargs):
        components = self.DEFAULTS.copy()
        components.update(defaults)
        for i,arg in enumerate(args):
            components[self.POSITIONAL_ARGS[i]] = arg
        components.update(kwargs)
        try:
            self.measurement = components['measurement']
            self.pathmap = self.parse_sensors(components['sensors'])
        except KeyError as e:
            raise OutputError('Output component {} is required.'.format(e))
        self.interval = int(components['interval'])
        self.metadata = tuple(components['metadata'])
        self.rates = tuple(components['rates'])
        self.metric = components['metric']
        self.node_tag = components['node_tag']
        self.min_rate = components['min_rate']
        self.max_rate = components['max_rate']
        self.warned = set()
        return

    @staticmethod
    def parse_sensors(sensors):
        pathmap = dict()
        for sensor in sensors:
            split = sensor.split()
            if len(split) != 2:
                raise ParseError('Malformed sensor string "{}"'.format(sensor))
            alias, rpath = split
            pathmap[rpath] = alias
        return pathmap

    def series_key(self, data, name):
        key = [ self.measurement, data.meta['node'] ]
        key += [ data.meta[k] for k in self.metadata if k in data.meta ]
        key.append(name)
        return KEY_DELIMITER.join( str(k) for k in key )

    def format(self, metric, tracker, statistics=None):
        """Format the metric as a TSDS Data record.

        Returns None if the metric doesn't account for all of the sensors.
        """
        data = Data(self.measurement, metric.timestamp, self.interval)
        data.meta['node'] = str(metric.tags.get(self.node_tag, ''))

        for k,v in metric.tags.items():
            if k in self.pathmap and self.pathmap[k] != 'node':
                data.meta[self.pathmap[k]] = str(v)
        for k,v in metric.fields.items():
            if k in self.pathmap:
                data.values[self.pathmap[k]] = v

        if len(data.meta) + len(data.values) < len(self.pathmap) + 1:
            return None

        if self.rates:
            self.process_rates(data, tracker, statistics)

        return data

    def process_rates(self, data, tracker, statistics=None):
        """Replace counter values with rates (or None)."""
        for name in self.rates:
            key = self.series_key(data, name)
            raw = data.values.get(name)
            data.values[name] = None

            try:
                value = as_number(raw)
            except NotNumericError as e:
                logging.warning('Rate {} for {}: {}'.format(name, key, e))
                if statistics:
                    statistics.add('not_numeric')
                continue

            if key not in tracker:
                tracker.record_baseline(key, self.interval, self.min_rate, self.max_rate, data.time, value)
                if statistics:
                    statistics.add('baseline')
                continue

            result = tracker.compute_rate(key, data.time, value)
            if statistics:
                statistics.tally(result)

            if result.failure is UnknownKey:
                if key not in self.warned:
                    logging.warning('No baseline for {}: {}'.format(key, result.reason))
                    self.warned.add(key)
                tracker.record_baseline(key, self.interval, self.min_rate, self.max_rate, data.time, value)
                continue
            if not result.ok:
                logging.debug('Could not calculate rate for {}: {}'.format(key, result.reason))
                continue

            data.values[name] = result.rate
        return

class DictOfLists(dict):
    def append(self, k, v):
        if k not in self:
            self[k] = []
        self[k].append(v)
        return

class OutputList(object):
    """The output list.

    There are two kinds of errors this can be expected to raise due to user
    error when an output is defined:

        ParseError          A sensor string is malformed.
        OutputError         A required component (measurement, sensors) is missing.
    """

    def __init__(self):
        self.rules = []
        self.defaults = dict()
        self.metric_rules = DictOfLists()
        return

    def define(self, **kwargs):
        """Define one or more default component values."""
        self.defaults.update(kwargs)
        return

    def undef(self, *args):
        """Undefine one or more default component values."""
        for k in args:
            del self.defaults[k]
        return

    def output(self, *args, **kwargs):
        """Define an OutputRule.

        The following can be supplied as positional arguments, in this order:

          * measurement
          * interval
          * sensors
          * metadata
          * rates
          * metric
        """
        rule = OutputRule( self.defaults, *args, **kwargs )
        self.rules.append( rule )
        self.metric_rules.append( rule.metric, rule )
        return

    def match(self, metric):
        """Returns the rules which accept the metric."""
        return self.metric_rules.get(metric.name, []) + self.metric_rules.get(None, [])

def batches(records, size=BATCH_SIZE):
    """Yield lists of at most size JSON strings."""
    batch = []
    for record in records:
        batch.append(record.to_json())
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
    return

def batch_payload(batch):
    return '[' + ','.join(batch) + ']'
