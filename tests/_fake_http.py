import json

import requests


def response(status_code, body=None, headers=None, text=None):
    r = requests.Response()
    r.status_code = status_code
    if body is not None:
        r._content = json.dumps(body).encode("utf-8")
    elif text is not None:
        r._content = text.encode("utf-8")
    else:
        r._content = b""
    r.headers.update(headers or {})
    r.url = "https://management.azure.com/fake"
    return r
