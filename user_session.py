"""Per-user session state.

A ``UserSession`` follows the identity provider and, once a user is known,
the user's profile document:

    loading -> anonymous
            -> authenticated (profile: loading -> present | absent)

Everything it opens (the profile watch, dashboard views and their
directory subscriptions) is closed again on sign-out, account deletion or
``close()``.
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from functools import partial

from assistant import FaqChat, MatcherPanel
from directory import DonorDirectory
from identity import AuthError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ('name', 'email', 'phone', 'gender', 'bloodType', 'lastDonationDate',
                  'city', 'mobileVisibility', 'geolocation')


def profile_from_document(data):
    return {field: data.get(field) for field in PROFILE_FIELDS}


def serialize_profile(profile):
    if profile is None:
        return None
    result = dict(profile)
    last_donation = result.get('lastDonationDate')
    if isinstance(last_donation, datetime):
        result['lastDonationDate'] = last_donation.date().isoformat()
    return result


class Dashboard:
    """State of one open dashboard page: directory, FAQ chat and matcher."""

    def __init__(self, store, assistant, chat_error_text, default_radius_km=50, collection='users'):
        self.id = str(uuid.uuid4())
        self.directory = DonorDirectory(store, collection).open()
        self.chat = FaqChat(assistant, chat_error_text)
        self.matcher = MatcherPanel(assistant, default_radius_km)

    def close(self):
        self.directory.close()
        self.chat.reset()
        self.matcher.close()


class UserSession:
    def __init__(self, auth_client, store, collection='users'):
        self.auth = auth_client
        self.store = store
        self.collection = collection
        self.status = 'loading'
        self.user = None
        self.profile = None
        self.profile_status = None
        self.dashboards = {}
        self._auth_subscription = None
        self._profile_subscription = None
        self._lock = threading.RLock()

    def start(self, id_token=None, refresh_token=None):
        self._auth_subscription = self.auth.on_auth_state_changed(self._on_auth_state)
        self.auth.start(id_token, refresh_token)
        return self

    @property
    def is_authenticated(self):
        return self.status == 'authenticated'

    def _on_auth_state(self, user):
        with self._lock:
            self._drop_profile_subscription()
            self.user = user
            self.profile = None
            if user is None:
                logger.debug("Session is anonymous")
                self.status = 'anonymous'
                self.profile_status = None
                self._close_dashboards()
                return
            logger.debug(f"Session authenticated as {user.uid}")
            self.status = 'authenticated'
            self.profile_status = 'loading'

        subscription = self.store.watch_document(self.collection, user.uid,
                                                 partial(self._on_profile_snapshot, user.uid))
        with self._lock:
            if self.user is user:
                self._profile_subscription = subscription
                return
        # signed out (or switched user) while subscribing
        subscription.unsubscribe()

    def _on_profile_snapshot(self, uid, data):
        with self._lock:
            if self.user is None or self.user.uid != uid:
                return
            if data is None:
                self.profile = None
                self.profile_status = 'absent'
            else:
                self.profile = profile_from_document(data)
                self.profile_status = 'present'

    def _drop_profile_subscription(self):
        if self._profile_subscription is not None:
            self._profile_subscription.unsubscribe()
            self._profile_subscription = None

    def _close_dashboards(self):
        dashboards, self.dashboards = self.dashboards, {}
        for dashboard in dashboards.values():
            dashboard.close()

    def logout(self):
        self.auth.sign_out()

    def delete_account(self):
        """Delete the profile document, then the identity. A failure in the second
        step leaves the first one done."""
        user = self.user
        if user is None:
            raise AuthError('NO_CURRENT_USER')
        self.store.delete(self.collection, user.uid)
        logger.info(f"Deleted profile document of {user.uid}")
        self.auth.delete_current_user()

    def open_dashboard(self, assistant, chat_error_text, default_radius_km=50):
        if not self.is_authenticated:
            raise AuthError('NO_CURRENT_USER')
        dashboard = Dashboard(self.store, assistant, chat_error_text, default_radius_km, self.collection)
        with self._lock:
            if not self.is_authenticated:
                dashboard.close()
                raise AuthError('NO_CURRENT_USER')
            self.dashboards[dashboard.id] = dashboard
        return dashboard

    def dashboard(self, view_id):
        with self._lock:
            return self.dashboards.get(view_id)

    def close_dashboard(self, view_id):
        with self._lock:
            dashboard = self.dashboards.pop(view_id, None)
        if dashboard is not None:
            dashboard.close()
        return dashboard is not None

    def close(self):
        if self._auth_subscription is not None:
            self._auth_subscription.unsubscribe()
            self._auth_subscription = None
        with self._lock:
            self._drop_profile_subscription()
            self._close_dashboards()

    def to_dict(self):
        with self._lock:
            return {
                'status': self.status,
                'user': self.user.to_dict() if self.user else None,
                'profileStatus': self.profile_status,
                'profile': serialize_profile(self.profile),
            }


class SessionRegistry:
    """Flask session id -> live UserSession, with idle eviction."""

    def __init__(self, factory, max_idle_seconds=24 * 3600):
        self._factory = factory
        self._max_idle = max_idle_seconds
        self._sessions = {}
        self._last_seen = {}
        self._lock = threading.Lock()

    def get(self, sid, id_token=None, refresh_token=None):
        self.prune()
        with self._lock:
            user_session = self._sessions.get(sid)
            if user_session is not None:
                self._last_seen[sid] = time.monotonic()
                return user_session

        user_session = self._factory(id_token, refresh_token)
        with self._lock:
            existing = self._sessions.setdefault(sid, user_session)
            self._last_seen[sid] = time.monotonic()
        if existing is not user_session:
            user_session.close()
        return existing

    def discard(self, sid):
        with self._lock:
            user_session = self._sessions.pop(sid, None)
            self._last_seen.pop(sid, None)
        if user_session is not None:
            user_session.close()

    def prune(self):
        cutoff = time.monotonic() - self._max_idle
        with self._lock:
            stale = [sid for sid, seen in self._last_seen.items() if seen < cutoff]
            sessions = [self._sessions.pop(sid) for sid in stale]
            for sid in stale:
                self._last_seen.pop(sid, None)
        for user_session in sessions:
            user_session.close()
        if stale:
            logger.info(f"Evicted {len(stale)} idle sessions")

    def __len__(self):
        with self._lock:
            return len(self._sessions)
