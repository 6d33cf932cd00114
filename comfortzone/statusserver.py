"""
statusserver.py

The statusserver serves the latest status of each monitored system. Useful paths:
   /status.json -- latest status record of every system
   /raw.json -- latest raw dump of every system, for offline replay
   /read -- send a READ frame
   /write -- send a WRITE frame

e.g.
curl --data-urlencode system=house --data-urlencode table=1 --data-urlencode row=12 http://10.188.2.175:8001/read
"""

import json, logging, threading

from socketserver import ThreadingMixIn
from urllib.parse import parse_qs
from wsgiref.simple_server import make_server, WSGIServer

from . import frames

LOGGER = logging.getLogger('comfortzone')


class _ThreadingWSGIStatusServer(ThreadingMixIn, WSGIServer):
    """Thread per request HTTP server."""
    # Make worker threads "fire and forget". Beginning with Python 3.7 this
    # prevents a memory leak because ``ThreadingMixIn`` starts to gather all
    # non-daemon threads in a list in order to join on them at server close.
    daemon_threads = True


def _form(environ):
    try:
        size = int(environ.get('CONTENT_LENGTH') or 0)
    except ValueError:
        size = 0
    body = environ['wsgi.input'].read(size).decode() if size else ''
    return {k: v[0] for (k, v) in parse_qs(body, keep_blank_values=True).items()}


def _frame_json(frame):
    return {
        'source': frame.source,
        'destination': frame.destination,
        'function': frame.function.name,
        'data': list(frame.data),
    }


def _request(monitors, form, func):
    system = form.get('system')
    for m in monitors:
        if system == m.name:
            break
    else:
        return ('404 Not Found', {'error': f'system {system} not found'})
    try:
        table = frames.check_byte('table', int(form['table'], 0))
        row = frames.check_byte('row', int(form['row'], 0))
        data = bytes.fromhex(form.get('data', ''))
    except (KeyError, ValueError, frames.ArgumentOutOfRange) as e:
        return ('400 Bad Request', {'error': f'bad request: {e!r}'})
    LOGGER.info(f'{system} {func.name} {table}.{row} {data.hex()}')
    try:
        reply = m.request(func, table, row, data)
    except (frames.ComfortZoneError, OSError) as e:
        LOGGER.info(f'{system} request failed: {e}')
        return ('502 Bad Gateway', {'error': str(e)})
    LOGGER.info(f'{system} response: {reply}')
    return ('200 OK', {'response': _frame_json(reply)})


def make_app(monitors):
    def app(environ, start_response):
        method = environ.get('REQUEST_METHOD')
        path = environ['PATH_INFO']
        if path == '/status.json':
            js = {m.name: m.status.as_dict() if m.status else None for m in monitors}
            status = '200 OK'
        elif path == '/raw.json':
            js = {m.name: m.status.raw if m.status else None for m in monitors}
            status = '200 OK'
        elif (path == '/write' or path == '/read') and method == 'POST':
            func = frames.Function.WRITE if path == '/write' else frames.Function.READ
            (status, js) = _request(monitors, _form(environ), func)
        else:
            status = '404 Not Found'
            js = {'error': f'{method} {path} not found'}
        output = json.dumps(js).encode()
        start_response(status, [('Content-type', 'application/json')])
        return [output]
    return app


def start_statusserver(port, monitors):
    LOGGER.info(f'serving status on {port}')
    httpd = make_server('', port, make_app(monitors), _ThreadingWSGIStatusServer)
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    return httpd
