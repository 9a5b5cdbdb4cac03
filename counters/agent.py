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

"""Push Counter Rates to TSDS.

    agent {<config-name>} {+test}

Parameters:

    config-name The name of an alternate config module (just the module name,
                omit .py). Default is agent_config
    test        If supplied, then TSDS is not posted to and the batch which would
                have been posted is instead written to stdout.

You define outputs (see agent_config-sample.py) and based on those it:

  * listens on a UDP port for line protocol (as written by e.g. a Telegraf
    socket_writer output)
  * maps the tags and fields of each line to TSDS metadata and values
  * converts counters to rates
  * groups the resulting records into batches
  * and posts them to TSDS.

About Rates
-----------

All rates are computed against a single RateTracker which lives as long as
the agent does. The first sample of every series is a baseline and is reported
as null; so is any sample which fails to produce a sensible rate. See
counter.rates for the gory details.

More about TSDS
---------------

We use a thread pool to manage posts to TSDS.

TSDS_HOSTNAME, TSDS_USERNAME and TSDS_PASSWORD identify the TSDS push service.

TSDS_CONNECTIONS determines the number of threads in the thread pool.

A separate queue is maintained of pending batches. The maximum depth of that queue
is determined by TSDS_QUEUE_MAX. When the queue is full incoming datagrams are
dropped.

BATCH_SIZE is the maximum number of records per post. TSDS traditionally
expects 50.
"""

import sys
import logging
import asyncio
import traceback
from concurrent.futures import ThreadPoolExecutor
import requests

import importlib

from counter.agent_utils import parse_line, batches, batch_payload, ParseError, RateStatistics
from counter.rates import RateTracker
from counter.wsc import WebServiceClient, push_url

# Set this to a print func to enable it.
PRINT_COROUTINE_ENTRY_EXIT = None

# Similar to the foregoing, but always set to something valid.
STATISTICS_PRINTER = logging.info

LOG_LEVEL = None

CONFIG_SYMBOLS = ( 'LISTEN_ADDRESS', 'LISTEN_PORT', 'TSDS_HOSTNAME', 'TSDS_USERNAME', 'TSDS_PASSWORD',
                   'TSDS_CONNECTIONS', 'TSDS_QUEUE_MAX', 'BATCH_SIZE', 'STATS', 'LOG_LEVEL', 'outputs'
                 )

def lart(msg=None, help='agent {config} {+testing}'):
    if msg:
        print(msg, file=sys.stderr)
    if help:
        print(help, file=sys.stderr)
    sys.exit(1)

class Controller(object):

    def __init__(self, client, connections, max_queue, event_loop):
        """client is a WebServiceClient, or None when testing."""
        self.client = client
        self.max_queue = max_queue
        self.event_loop = event_loop
        self.queue = asyncio.Queue(max_queue)
        self.semaphore = asyncio.Semaphore( connections+1 )
        self.pool = ThreadPoolExecutor(connections)
        self.queue_processor = event_loop.create_task(self.process_queue())
        return

    def queue_full(self):
        return self.queue.qsize() >= self.max_queue

    async def submit(self, batch):
        if PRINT_COROUTINE_ENTRY_EXIT:
            PRINT_COROUTINE_ENTRY_EXIT('> submit')

        await self.queue.put(batch)

        if PRINT_COROUTINE_ENTRY_EXIT:
            PRINT_COROUTINE_ENTRY_EXIT('< submit')
        return

    async def process_queue(self):
        if PRINT_COROUTINE_ENTRY_EXIT:
            PRINT_COROUTINE_ENTRY_EXIT('> process_queue')

        while True:
            batch = await self.queue.get()

            self.queue.task_done()
            await self.semaphore.acquire()
            self.event_loop.run_in_executor(self.pool, self.tsds_update, batch)

        raise RuntimeError("Control loop should never exit.")

    def tsds_update(self, batch):
        if PRINT_COROUTINE_ENTRY_EXIT:
            PRINT_COROUTINE_ENTRY_EXIT('> tsds_update')

        payload = batch_payload(batch)
        if self.client is None:
            print('>> {} <<'.format(payload))
        else:
            try:
                logging.info('Sending {} measurements to TSDS'.format(len(batch)))
                status, text = self.client.post('add_data', dict(data=payload))
                if status >= 400:
                    logging.error('TSDS error: {} {}'.format(status, text))
            except requests.exceptions.RequestException as e:
                logging.error('Could not send output to TSDS: {} {}'.format(type(e).__name__, e))
            except Exception as e:
                logging.error('{}:\n{}'.format(e, traceback.format_exc()))

        asyncio.run_coroutine_threadsafe( self.finish(), self.event_loop )

        if PRINT_COROUTINE_ENTRY_EXIT:
            PRINT_COROUTINE_ENTRY_EXIT('< tsds_update')
        return

    async def finish(self):
        if PRINT_COROUTINE_ENTRY_EXIT:
            PRINT_COROUTINE_ENTRY_EXIT('> finish')

        self.semaphore.release()

        if PRINT_COROUTINE_ENTRY_EXIT:
            PRINT_COROUTINE_ENTRY_EXIT('< finish')
        return

class UDPListener(asyncio.DatagramProtocol):

    def connection_made(self, transport):
        self.transport = transport
        return

    def records(self, request):
        """Yields the TSDS Data records for the lines in the datagram."""
        for line in request.decode(errors='backslashreplace').split('\n'):
            try:
                metric = parse_line(line)
            except ParseError as e:
                logging.warning('{}'.format(e))
                continue
            if metric is None:
                continue
            for rule in outputs.match(metric):
                data = rule.format(metric, self.tracker, self.statistics)
                if data is not None:
                    yield data
        return

    async def handle_request(self, request):
        if PRINT_COROUTINE_ENTRY_EXIT:
            PRINT_COROUTINE_ENTRY_EXIT('> handle_request')
        if self.controller.queue_full():
            logging.debug('Queue full, datagram dropped.')
            if PRINT_COROUTINE_ENTRY_EXIT:
                PRINT_COROUTINE_ENTRY_EXIT('< handle_request')
            return

        for batch in batches(self.records(request), BATCH_SIZE):
            await self.controller.submit( batch )

        if PRINT_COROUTINE_ENTRY_EXIT:
            PRINT_COROUTINE_ENTRY_EXIT('< handle_request')
        return

    def datagram_received(self, request, addr):
        self.event_loop.create_task(self.handle_request( request ))
        return

async def statistics_report(statistics, frequency):
    """The statistics report.

    Counts of rates computed, baselines recorded and each kind of failure, since
    the agent started.
    """
    logging.info('statistics_report started')
    while True:
        await asyncio.sleep(frequency)
        STATISTICS_PRINTER('rates: {}'.format(statistics.report()))
    return

async def close_tasks(tasks):
    all_tasks = asyncio.gather(*tasks)
    all_tasks.cancel()
    try:
        await all_tasks
    except (asyncio.CancelledError, requests.exceptions.RequestException):
        pass
    return

def main(testing=False):

    event_loop = asyncio.new_event_loop()
    asyncio.set_event_loop( event_loop )

    tracker = RateTracker()
    statistics = RateStatistics()
    if STATS:
        event_loop.create_task(statistics_report(statistics, STATS))

    if testing:
        client = None
    else:
        client = WebServiceClient(push_url(TSDS_HOSTNAME), TSDS_USERNAME, TSDS_PASSWORD)

    controller = Controller(client, TSDS_CONNECTIONS, TSDS_QUEUE_MAX, event_loop)
    listener = event_loop.create_datagram_endpoint(
        UDPListener,
        local_addr=(LISTEN_ADDRESS, LISTEN_PORT)
    )
    try:
        transport, service = event_loop.run_until_complete(listener)
    except PermissionError:
        print('Permission Denied! (are you root? is the port free?)', file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print('{} (did you supply an interface address?)'.format(e), file=sys.stderr)
        sys.exit(1)

    service.event_loop = event_loop
    service.controller = controller
    service.tracker = tracker
    service.statistics = statistics

    try:
        event_loop.run_forever()
    except KeyboardInterrupt:
        pass

    transport.close()

    tasks = asyncio.all_tasks(event_loop)
    if tasks:
        event_loop.run_until_complete(close_tasks(tasks))

    event_loop.close()
    if client is not None:
        client.close()

if __name__ == "__main__":
    argv = sys.argv.copy()

    testing = False
    while len(argv) > 1 and argv[-1].startswith('+'):
        arg = argv.pop()[1:]
        if   arg == 'testing'[:len(arg)]:
            testing = True
        else:
            lart('Unrecognized option "{}"'.format(arg))

    if len(argv) > 2:
        lart('Too many arguments')

    if len(argv) > 1:
        config_name = argv[1]
    else:
        config_name = 'agent_config'

    try:
        config = importlib.import_module(config_name)
        for sym in CONFIG_SYMBOLS:
            globals()[sym] = getattr(config, sym)
    except Exception as e:
        lart('Config load for {} failed: {}'.format(config_name, e))

    if LOG_LEVEL is not None:
        logging.basicConfig(level=LOG_LEVEL)

    main(testing)
