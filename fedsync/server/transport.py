import socketio
from aiohttp import web

MAX_MESSAGE_BYTES = 100 * 1024 * 1024


def create_socket_server(**kwargs) -> socketio.AsyncServer:
    """
    socketio server configured for model traffic: connections are accepted
    before the connect handler runs (so it can emit the first download) and
    messages may carry a full set of weights.
    """
    options = {
        "async_mode": "aiohttp",
        "always_connect": True,
        "max_http_buffer_size": MAX_MESSAGE_BYTES,
    }
    options.update(kwargs)
    return socketio.AsyncServer(**options)


def create_app(sio: socketio.AsyncServer) -> web.Application:
    app = web.Application(client_max_size=MAX_MESSAGE_BYTES)
    sio.attach(app)
    return app
