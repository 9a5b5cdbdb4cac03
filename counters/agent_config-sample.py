"""Agent Configuration. This is unambiguously a Python sourcefile.

There are a few bits which are global, but the working stuff, namely which
line protocol tags and fields become which TSDS metadata and values and which
of them are counters, is in a DSL which is built on top of Python.

FOR FURTHER INFORMATION: See the pydoc for counter.agent_utils.OutputRule
"""

from counter.agent_utils import OutputList
outputs = OutputList()

# Where line protocol is received. Point e.g. a Telegraf socket_writer output
# at this with address = "udp://127.0.0.1:8094".
LISTEN_ADDRESS = '127.0.0.1'
LISTEN_PORT = 8094

TSDS_HOSTNAME = 'tsds.example.com'
TSDS_USERNAME = 'tsds'
TSDS_PASSWORD = 'BEWARE WORLD READABLE PASSWORDS'
TSDS_CONNECTIONS = 2
TSDS_QUEUE_MAX = 100
# TSDS traditionally expects batches of 50.
BATCH_SIZE = 50
# Set this to an integer number of seconds to log statistics at intervals.
# STATS = 3600 # one hour
STATS = 600

# Determines the logging level if not None
import logging
LOG_LEVEL = logging.INFO # to set it to INFO
# LOG_LEVEL = None

outputs.define(
        interval =      60,             # seconds between samples
        node_tag =      'device',       # the tag with the node name
        min_rate =      0,
        max_rate =      1000 ** 5       # 1 Peta (e.g. 1 Pbps)
    )

# Interface counters from JTI (Junos Telemetry Interface).
outputs.output(
        measurement =   'interface',
        metric =        '/interfaces/',
        sensors =       [ 'intf /interfaces/interface/@name',
                          'input /interfaces/interface/state/counters/in-octets',
                          'output /interfaces/interface/state/counters/out-octets',
                          'inUcast /interfaces/interface/state/counters/in-unicast-pkts',
                          'outUcast /interfaces/interface/state/counters/out-unicast-pkts',
                          'status /interfaces/interface/state/oper-status'
                        ],
        metadata =      [ 'intf' ],
        rates =         [ 'input', 'output', 'inUcast', 'outUcast' ]
    )

# CPU utilization is already a rate, so nothing is listed in rates.
outputs.output(
        'cpu',
        300,
        [ 'name /components/component/@name',
          'cpu /components/component/cpu/utilization/state/avg'
        ],
        [ 'name' ],
        metric =        '/components/'
    )
