"""Donor profile form: validation, persistence and the location helper."""

import logging
import re
from datetime import date, datetime, time
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

BLOOD_TYPES = ('A+', 'A-', 'B+', 'B-', 'AB+', 'AB-', 'O+', 'O-')
GENDERS = ('male', 'female', 'other')
EARLIEST_DONATION_DATE = date(1900, 1, 1)
GEOLOCATION_RE = re.compile(r'^-?\d{1,2}\.\d{4}, -?\d{1,3}\.\d{4}$')

# field -> i18n key of the message shown next to that field
FIELD_ERRORS = {
    'name': 'error_name_min',
    'email': 'error_email_invalid',
    'gender': 'error_gender_required',
    'bloodType': 'error_blood_type_required',
    'lastDonationDate': 'error_last_donation_date',
    'city': 'error_city_required',
    'geolocation': 'error_geolocation_format',
}


class ProfileValidationError(Exception):
    def __init__(self, errors):
        self.errors = errors
        super().__init__(f"Invalid profile fields: {', '.join(sorted(errors))}")


class LocationError(Exception):
    pass


class ProfileForm(BaseModel):
    """PUT /api/profile"""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2)
    email: EmailStr
    phone: Optional[str] = ''
    gender: Literal['male', 'female', 'other']
    bloodType: str
    lastDonationDate: Optional[date] = None
    city: str = Field(min_length=2)
    mobileVisibility: bool = True
    geolocation: Optional[str] = ''

    @field_validator('bloodType')
    @classmethod
    def check_blood_type(cls, value):
        if value not in BLOOD_TYPES:
            raise ValueError('unknown blood type')
        return value

    @field_validator('lastDonationDate')
    @classmethod
    def check_donation_date(cls, value):
        if value is not None and not (EARLIEST_DONATION_DATE <= value <= date.today()):
            raise ValueError('date out of range')
        return value

    @field_validator('geolocation')
    @classmethod
    def check_geolocation(cls, value):
        if value and not GEOLOCATION_RE.match(value):
            raise ValueError('malformed geolocation')
        return value


def validate_profile(data):
    """Validate submitted form data; raises ProfileValidationError with {field: i18n key}."""
    try:
        return ProfileForm.model_validate(data or {})
    except ValidationError as e:
        errors = {}
        for error in e.errors():
            field = str(error['loc'][0]) if error['loc'] else '__all__'
            errors.setdefault(field, FIELD_ERRORS.get(field, 'error_invalid_value'))
        raise ProfileValidationError(errors)


def build_payload(form, existing=None):
    """Document fields written for a submitted form.

    An unset last donation date is left out entirely so the merge keeps
    whatever is stored. The email of an existing profile is never replaced.
    """
    payload = form.model_dump()
    if form.lastDonationDate is None:
        payload.pop('lastDonationDate')
    else:
        payload['lastDonationDate'] = datetime.combine(form.lastDonationDate, time.min)
    if existing and existing.get('email'):
        payload['email'] = existing['email']
    return payload


def save_profile(store, uid, form, collection='users'):
    """Merge-upsert the form into the user's profile document."""
    existing = store.get(collection, uid)
    payload = build_payload(form, existing)
    store.set(collection, uid, payload, merge=True)
    logger.info(f"Profile {uid} saved")
    return payload


def form_defaults(profile):
    """Initial form values for a (possibly missing) profile."""
    profile = profile or {}
    last_donation = profile.get('lastDonationDate')
    return {
        'name': profile.get('name') or '',
        'email': profile.get('email') or '',
        'phone': profile.get('phone') or '',
        'gender': profile.get('gender'),
        'bloodType': profile.get('bloodType'),
        'lastDonationDate': last_donation.date().isoformat() if isinstance(last_donation, datetime) else None,
        'city': profile.get('city') or '',
        'mobileVisibility': profile.get('mobileVisibility', True) is not False,
        'geolocation': profile.get('geolocation') or '',
    }


def format_geolocation(latitude, longitude):
    return f"{latitude:.4f}, {longitude:.4f}"


def locate(position):
    """Turn one reading of the device location API into the stored geolocation string.

    ``position`` is what the client read: ``{'latitude': .., 'longitude': ..}``
    or ``{'error': ..}`` when the device refused or failed.
    """
    if not position or position.get('error'):
        raise LocationError((position or {}).get('error') or 'no position')
    try:
        latitude = float(position['latitude'])
        longitude = float(position['longitude'])
    except (KeyError, TypeError, ValueError):
        raise LocationError('malformed position')
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        raise LocationError('position out of range')
    return format_geolocation(latitude, longitude)
