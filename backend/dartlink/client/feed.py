"""Change feed subscriber built on the python-socketio client."""
import logging

import socketio

logger = logging.getLogger(__name__)

NAMESPACE = '/ws'


class FeedListener:
    """Delivers ``match_changed`` rows for the signed-in user to registered handlers.

    Handlers are callables taking a row dict. Every (re)connect re-subscribes
    watched matches, and the server answers each with a full snapshot, so
    events dropped while offline are recovered. Connect handlers run after that;
    a reconciler registers its full reload there.
    """

    def __init__(self, user_id, client=None):
        self.user_id = user_id
        self.sio = client or socketio.Client(reconnection=True)
        self._handlers = []
        self._notification_handlers = []
        self._connect_handlers = []
        self._watched = set()
        self.sio.on('connect', self.handle_connect, namespace=NAMESPACE)
        self.sio.on('disconnect', self.handle_disconnect, namespace=NAMESPACE)
        self.sio.on('match_changed', self.handle_match_changed, namespace=NAMESPACE)
        self.sio.on('match_snapshot', self.handle_match_changed, namespace=NAMESPACE)
        self.sio.on('notification', self.handle_notification, namespace=NAMESPACE)

    def add_handler(self, handler):
        self._handlers.append(handler)

    def remove_handler(self, handler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def add_notification_handler(self, handler):
        self._notification_handlers.append(handler)

    def add_connect_handler(self, handler):
        """Called with no arguments after every connect, including reconnects."""
        self._connect_handlers.append(handler)

    def connect(self, base_url, session=None):
        headers = {}
        if session is not None:
            cookie = '; '.join(f"{name}={value}" for name, value in session.cookies.items())
            if cookie:
                headers['Cookie'] = cookie
        self.sio.connect(base_url, headers=headers, namespaces=[NAMESPACE])

    def disconnect(self):
        self.sio.disconnect()

    def watch(self, match_id):
        self._watched.add(match_id)
        if self.sio.connected:
            self.sio.emit('subscribe_match', {'match_id': match_id}, namespace=NAMESPACE)

    def unwatch(self, match_id):
        self._watched.discard(match_id)

    def handle_connect(self):
        logger.info("feed connected for user %s; resubscribing %s matches", self.user_id, len(self._watched))
        for match_id in list(self._watched):
            self.sio.emit('subscribe_match', {'match_id': match_id}, namespace=NAMESPACE)
        for handler in list(self._connect_handlers):
            try:
                handler()
            except Exception:
                logger.exception("connect handler failed for user %s", self.user_id)

    def handle_disconnect(self, *args):
        logger.info("feed disconnected for user %s", self.user_id)

    def handle_match_changed(self, data):
        record = (data or {}).get('record')
        if not record:
            return False
        if self.user_id not in (record.get('challenger_id'), record.get('receiver_id')):
            return False
        for handler in list(self._handlers):
            try:
                handler(record)
            except Exception:
                logger.exception("feed handler failed for match %s", record.get('id'))
        return True

    def handle_notification(self, data):
        for handler in list(self._notification_handlers):
            handler(data)
