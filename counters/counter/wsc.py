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

"""GlobalNOC Web Service Client.

GlobalNOC web services (TSDS among them) take a "method" parameter plus
whatever parameters the method needs, either in the query string (GET) or as
multipart/form-data fields (POST):

    client = WebServiceClient(push_url('tsds.example.com'), 'tsds', 'secret')
    status, text = client.post('add_data', dict(data='[...]'))

Errors in the transport are not caught here, they are raised as
requests.exceptions.RequestException. There are no retries; that's up to the
caller.
"""

import requests

DEFAULT_TIMEOUT = 15
PUSH_URL = 'https://{}/tsds-basic/services/push.cgi'

def push_url(hostname):
    return PUSH_URL.format(hostname)

class WebServiceClient(object):
    """A connection to a web service.

    A single requests.Session is used, so that keepalive works. The session
    is threadsafe enough for what we do with it, namely one request per call
    with no shared cookies.
    """

    def __init__(self, url, username=None, password=None, timeout=DEFAULT_TIMEOUT):
        self.url = url
        self.username = username
        self.password = password
        self.timeout = timeout
        self.session = requests.Session()
        return

    @property
    def auth(self):
        """Basic auth is only used if both username and password are supplied."""
        if self.username and self.password:
            return (self.username, self.password)
        return None

    @staticmethod
    def get_params(method, params):
        query = dict(method=method)
        query.update(params or {})
        return query

    @staticmethod
    def post_params(method, params):
        """multipart/form-data fields. A filename of None makes requests send
        a plain field instead of a file."""
        fields = [ ('method', (None, method)) ]
        fields += [ (k, (None, v)) for k,v in (params or {}).items() ]
        return fields

    def get(self, method, params=None):
        """Sends a GET request. Returns (status code, response text)."""
        response = self.session.get(self.url, params=self.get_params(method, params),
                                    auth=self.auth, timeout=self.timeout
                                   )
        return response.status_code, response.text

    def post(self, method, params=None):
        """Sends a POST request. Returns (status code, response text)."""
        response = self.session.post(self.url, files=self.post_params(method, params),
                                     auth=self.auth, timeout=self.timeout
                                    )
        return response.status_code, response.text

    def close(self):
        self.session.close()
        return
