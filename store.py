"""Document store backends.

Both backends expose the surface the rest of the app needs: get / set (with
merge) / delete on a single document, a full listing of a collection, and
realtime watches. A watch delivers a full snapshot right after subscribing and
again after every change; callers rebuild their state from that snapshot.

    * ``SqlDocumentStore`` keeps documents as JSON rows through Flask-SQLAlchemy
      and notifies watchers in-process after each committed write.
    * ``FirestoreDocumentStore`` forwards to Cloud Firestore through
      ``firebase_admin``; watch callbacks arrive on the SDK's listener thread.
"""

import itertools
import logging
import threading
from datetime import datetime

from database import db, Document

logger = logging.getLogger(__name__)

_TIMESTAMP_KEY = '__timestamp__'


class Subscription:
    """Handle returned by the watch calls. unsubscribe() may be called twice."""

    def __init__(self, cancel):
        self._cancel = cancel
        self._lock = threading.Lock()
        self.active = True

    def unsubscribe(self):
        with self._lock:
            if not self.active:
                return
            self.active = False
        self._cancel()


def _encode(value):
    if isinstance(value, datetime):
        return {_TIMESTAMP_KEY: value.isoformat()}
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _decode(value):
    if isinstance(value, dict):
        if set(value) == {_TIMESTAMP_KEY}:
            return datetime.fromisoformat(value[_TIMESTAMP_KEY])
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


class SqlDocumentStore:
    def __init__(self, app):
        self.app = app
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._doc_listeners = {}
        self._col_listeners = {}

    def get(self, collection, doc_id):
        with self.app.app_context():
            row = db.session.get(Document, (collection, doc_id))
            return _decode(row.data) if row else None

    def list(self, collection):
        with self.app.app_context():
            rows = Document.query.filter_by(collection=collection).order_by(Document.doc_id).all()
            return [(row.doc_id, _decode(row.data)) for row in rows]

    def set(self, collection, doc_id, data, merge=False):
        payload = _encode(data)
        with self.app.app_context():
            row = db.session.get(Document, (collection, doc_id))
            if row is None:
                db.session.add(Document(collection=collection, doc_id=doc_id, data=payload))
            elif merge:
                row.data = {**row.data, **payload}
            else:
                row.data = payload
            db.session.commit()
        self._notify(collection, doc_id)

    def delete(self, collection, doc_id):
        with self.app.app_context():
            row = db.session.get(Document, (collection, doc_id))
            if row is None:
                return
            db.session.delete(row)
            db.session.commit()
        self._notify(collection, doc_id)

    def watch_document(self, collection, doc_id, callback):
        key = (collection, doc_id)
        token = next(self._ids)
        with self._lock:
            self._doc_listeners.setdefault(key, {})[token] = callback
        callback(self.get(collection, doc_id))

        def cancel():
            self._remove_listener(self._doc_listeners, key, token)
        return Subscription(cancel)

    def watch_collection(self, collection, callback):
        token = next(self._ids)
        with self._lock:
            self._col_listeners.setdefault(collection, {})[token] = callback
        callback(self.list(collection))

        def cancel():
            self._remove_listener(self._col_listeners, collection, token)
        return Subscription(cancel)

    def listener_count(self):
        with self._lock:
            return (sum(len(v) for v in self._doc_listeners.values())
                    + sum(len(v) for v in self._col_listeners.values()))

    def _remove_listener(self, registry, key, token):
        with self._lock:
            listeners = registry.get(key)
            if not listeners:
                return
            listeners.pop(token, None)
            if not listeners:
                registry.pop(key, None)

    def _notify(self, collection, doc_id):
        with self._lock:
            doc_callbacks = list(self._doc_listeners.get((collection, doc_id), {}).values())
            col_callbacks = list(self._col_listeners.get(collection, {}).values())

        if doc_callbacks:
            data = self.get(collection, doc_id)
            for callback in doc_callbacks:
                self._deliver(callback, data)
        if col_callbacks:
            documents = self.list(collection)
            for callback in col_callbacks:
                self._deliver(callback, documents)

    @staticmethod
    def _deliver(callback, snapshot):
        # a failing watcher must not fail the write that triggered it
        try:
            callback(snapshot)
        except Exception as e:
            logger.exception(f"Snapshot listener failed: {e}")


class FirestoreDocumentStore:
    def __init__(self, client=None):
        if client is None:
            from firebase_admin import firestore
            client = firestore.client()
        self.client = client

    def get(self, collection, doc_id):
        snapshot = self.client.collection(collection).document(doc_id).get()
        return snapshot.to_dict() if snapshot.exists else None

    def list(self, collection):
        return [(doc.id, doc.to_dict()) for doc in self.client.collection(collection).stream()]

    def set(self, collection, doc_id, data, merge=False):
        self.client.collection(collection).document(doc_id).set(data, merge=merge)

    def delete(self, collection, doc_id):
        self.client.collection(collection).document(doc_id).delete()

    def watch_document(self, collection, doc_id, callback):
        def on_snapshot(doc_snapshots, changes, read_time):
            data = None
            for snapshot in doc_snapshots:
                if snapshot.exists:
                    data = snapshot.to_dict()
            callback(data)

        watch = self.client.collection(collection).document(doc_id).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe)

    def watch_collection(self, collection, callback):
        def on_snapshot(col_snapshot, changes, read_time):
            callback([(doc.id, doc.to_dict()) for doc in col_snapshot])

        watch = self.client.collection(collection).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe)


def create_store(app):
    """Build the document store selected by DOCUMENT_STORE."""
    backend = app.config.get('DOCUMENT_STORE', 'sql')
    if backend == 'firestore':
        return FirestoreDocumentStore()
    if backend == 'sql':
        return SqlDocumentStore(app)
    raise ValueError(f"Unknown DOCUMENT_STORE: {backend}")
