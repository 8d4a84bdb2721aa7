"""
In-memory stand-ins for socketio.AsyncServer / socketio.AsyncClient.

Messages are deep-copied on delivery and client handlers run as separate
tasks, as they would over a real connection.
"""
import asyncio
import copy
import itertools

from socketio import exceptions as sio_exceptions


class LoopbackServer:
    def __init__(self):
        self.handlers = {}
        self.clients = {}
        self.emitted = []
        self._ids = itertools.count()
        self._tasks = set()

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def emit(self, event, data=None, to=None, **kwargs):
        self.emitted.append((event, data, to))
        if to is not None:
            targets = [self.clients[to]] if to in self.clients else []
        else:
            targets = list(self.clients.values())
        for client in targets:
            client.deliver(event, data)

    def client_factory(self, **kwargs):
        return lambda: LoopbackClient(self, **kwargs)

    async def flush(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


class LoopbackClient:
    def __init__(self, server, drop_acks=False):
        self.server = server
        self.drop_acks = drop_acks
        self.handlers = {}
        self.received = []
        self.sid = None
        self.connected = False

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, **kwargs):
        self.sid = f"sid-{next(self.server._ids)}"
        self.server.clients[self.sid] = self
        self.connected = True
        handler = self.server.handlers.get("connect")
        if handler is not None:
            await handler(self.sid, {}, None)

    async def disconnect(self):
        if not self.connected:
            return
        self.connected = False
        self.server.clients.pop(self.sid, None)
        handler = self.server.handlers.get("disconnect")
        if handler is not None:
            await handler(self.sid)

    async def call(self, event, data=None, timeout=60, **kwargs):
        if self.drop_acks:
            await asyncio.sleep(timeout)
            raise sio_exceptions.TimeoutError()
        return await self.server.handlers[event](self.sid, copy.deepcopy(data))

    def deliver(self, event, data):
        self.received.append((event, copy.deepcopy(data)))
        handler = self.handlers.get(event)
        if handler is None:
            return
        task = asyncio.ensure_future(handler(copy.deepcopy(data)))
        self.server._tasks.add(task)
        task.add_done_callback(self.server._tasks.discard)


async def settle(server, hub):
    """Runs until neither the aggregation server nor any client has pending work."""
    while True:
        await server.wait_idle()
        await hub.flush()
        await asyncio.sleep(0)
        if not server._tasks and not hub._tasks:
            return
