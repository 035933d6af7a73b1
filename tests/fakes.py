import json

from requests.cookies import RequestsCookieJar

HOST = "http://192.168.1.1"
TOKEN = "0123456789abcdef0123456789abcdef"
REBOOT_HTML = f"""
<script type="text/javascript">
    L.require('ui').then(function() {{
        L.env = {{ token: '{TOKEN}', sessionid: 'x' }};
    }});
</script>
"""


class FakeResponse:
    def __init__(self, text="", json_data=None):
        self.text = text
        self._json = json_data
        self.status_code = 200

    def json(self):
        if self._json is None:
            return json.loads(self.text)
        return self._json


class FakeSession:
    """
    Stand-in for requests.Session:
    - answers by (method, path) from a dict of FakeResponse objects
    - records every call as (method, url, kwargs)
    - a successful login drops a sysauth cookie into the jar
    """

    def __init__(self, responses, login_ok=True):
        self.responses = responses
        self.login_ok = login_ok
        self.calls = []
        self.cookies = RequestsCookieJar()
        self.closed = False

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, dict(kwargs, timeout=timeout)))
        path = url[len(HOST):]
        if method == "POST" and path == "/cgi-bin/luci" and self.login_ok:
            self.cookies.set("sysauth_http", "f00dfeed")
        try:
            return self.responses[(method, path)]
        except KeyError:
            raise AssertionError(f"Unexpected request {method} {url} in test")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True

    def paths(self):
        return [(method, url[len(HOST):]) for method, url, _ in self.calls]


def status_response(cpuusage, loadavg):
    return FakeResponse(json_data={"cpuusage": cpuusage, "loadavg": loadavg, "uptime": 1234})


def router_responses(cpuusage, loadavg):
    return {
        ("POST", "/cgi-bin/luci"): FakeResponse(),
        ("GET", "/cgi-bin/luci/"): status_response(cpuusage, loadavg),
        ("GET", "/cgi-bin/luci/admin/system/reboot"): FakeResponse(text=REBOOT_HTML),
        ("POST", "/cgi-bin/luci/admin/system/reboot/call"): FakeResponse(),
    }
