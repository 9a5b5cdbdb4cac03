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

"""Counter Utilities.

This is in three parts:

 * rates:           turns successive counter readings into rates
 * agent_utils:     for the agent feeding TSDS (line protocol, output rules,
                    batching)
 * wsc:             a client for GlobalNOC web services, such as TSDS

Together with the agent they convert the counters reported by network devices
(octets, packets) into per second rates and push them to TSDS.

Counters and Rates
------------------

A counter only goes up, until it overflows and starts over. A rate is the
difference between two readings divided by the time between them. There are
several ways for that to go wrong: the counter wraps, the readings are too far
apart to mean much, a reading is garbage (NaN), or the device rebooted and the
"difference" is nonsense. counter.rates deals with all of these and reports
which one it was, rather than raising.
"""
