"""Donor directory: a live mirror of the users collection with a staged filter.

The directory subscribes to the whole collection once and rebuilds its list
from every snapshot. Filter inputs are staged and only take effect on
``search()``. Contact details stay masked until they are revealed for that
donor, one field at a time.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

ALL_BLOOD_TYPES = 'all'
CONTACT_FIELDS = ('phone', 'email')


class RevealNotAllowed(Exception):
    pass


class UnknownDonor(Exception):
    pass


@dataclass(frozen=True)
class DonorListEntry:
    uid: str
    name: str
    blood_type: str
    city: str
    phone: Optional[str] = None
    mobile_visible: bool = False
    email: Optional[str] = None

    @property
    def email_visible(self):
        # email is shown to everyone once the donor has one
        return bool(self.email)

    def can_reveal(self, field):
        if field == 'phone':
            return self.mobile_visible and bool(self.phone)
        if field == 'email':
            return self.email_visible
        raise ValueError(f"Unknown contact field: {field}")


def project_donor(doc_id, data):
    """DonorListEntry for a user document, or None when name, bloodType or city is missing."""
    data = data or {}
    if not (data.get('name') and data.get('bloodType') and data.get('city')):
        return None
    return DonorListEntry(
        uid=doc_id,
        name=data['name'],
        blood_type=data['bloodType'],
        city=data['city'],
        phone=data.get('phone') or None,
        mobile_visible=bool(data.get('mobileVisibility')),
        email=data.get('email') or None,
    )


def project_donors(documents):
    entries = []
    for doc_id, data in documents:
        entry = project_donor(doc_id, data)
        if entry is not None:
            entries.append(entry)
    return entries


def filter_donors(entries, blood_type=ALL_BLOOD_TYPES, city=''):
    """Exact blood type match ('all' matches everything) and case-insensitive city substring."""
    result = list(entries)
    if blood_type and blood_type != ALL_BLOOD_TYPES:
        result = [e for e in result if e.blood_type == blood_type]
    needle = (city or '').strip().lower()
    if needle:
        result = [e for e in result if needle in e.city.lower()]
    return result


class RevealState:
    """donor uid -> set of contact fields the viewer asked to see."""

    def __init__(self):
        self._revealed = {}

    def reveal(self, uid, field):
        self._revealed.setdefault(uid, set()).add(field)

    def is_revealed(self, uid, field):
        return field in self._revealed.get(uid, ())

    def clear(self):
        self._revealed.clear()


class DonorDirectory:
    def __init__(self, store, collection='users'):
        self.store = store
        self.collection = collection
        self.loading = True
        self.entries = []
        self.staged_filter = {'bloodType': ALL_BLOOD_TYPES, 'city': ''}
        self.committed_filter = dict(self.staged_filter)
        self.revealed = RevealState()
        self._displayed = []
        self._subscription = None
        self._lock = threading.RLock()

    def open(self):
        if self._subscription is None:
            self._subscription = self.store.watch_collection(self.collection, self._on_snapshot)
            logger.debug(f"Directory subscribed to '{self.collection}'")
        return self

    def close(self):
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
            logger.debug(f"Directory unsubscribed from '{self.collection}'")

    def _on_snapshot(self, documents):
        entries = project_donors(documents)
        with self._lock:
            self.entries = entries
            self._displayed = filter_donors(entries, self.committed_filter['bloodType'],
                                            self.committed_filter['city'])
            self.loading = False

    def stage_filter(self, blood_type=None, city=None):
        with self._lock:
            if blood_type is not None:
                self.staged_filter['bloodType'] = blood_type or ALL_BLOOD_TYPES
            if city is not None:
                self.staged_filter['city'] = city
            return dict(self.staged_filter)

    def search(self):
        """Commit the staged filter and recompute the displayed list."""
        with self._lock:
            self.committed_filter = dict(self.staged_filter)
            self._displayed = filter_donors(self.entries, self.committed_filter['bloodType'],
                                            self.committed_filter['city'])
            return list(self._displayed)

    @property
    def displayed(self):
        with self._lock:
            return list(self._displayed)

    def _entry(self, uid):
        # only rows the committed filter shows can be revealed
        for entry in self._displayed:
            if entry.uid == uid:
                return entry
        raise UnknownDonor(uid)

    def reveal(self, uid, field):
        """Reveal one contact field of a donor. Revealing twice is a no-op."""
        if field not in CONTACT_FIELDS:
            raise ValueError(f"Unknown contact field: {field}")
        with self._lock:
            entry = self._entry(uid)
            if not entry.can_reveal(field):
                raise RevealNotAllowed(f"{field} of {uid} is not visible")
            self.revealed.reveal(uid, field)
            return getattr(entry, field)

    def row(self, entry):
        row = {
            'uid': entry.uid,
            'name': entry.name,
            'bloodType': entry.blood_type,
            'city': entry.city,
        }
        for field in CONTACT_FIELDS:
            revealed = self.revealed.is_revealed(entry.uid, field)
            row[field] = getattr(entry, field) if revealed else None
            row[f'{field}Revealed'] = revealed
            row[f'{field}Revealable'] = entry.can_reveal(field)
        return row

    def snapshot(self):
        with self._lock:
            rows = [self.row(entry) for entry in self._displayed]
            return {
                'loading': self.loading,
                'empty': not self.loading and not rows,
                'donors': rows,
                'filter': dict(self.committed_filter),
                'stagedFilter': dict(self.staged_filter),
            }
