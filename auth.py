"""
Caller identity, the admin registry and the authorization gate.

Identity is delegated to an external provider: the caller's bearer token (or
the provider's session cookie) is exchanged for the user profile at the
provider's userinfo endpoint. Whether that identity may mutate anything is
decided here, against the admin registry kept in the store.
"""

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Optional

import requests
from flask import current_app, g, request as flask_request

from errors import ForbiddenError, InternalError, NotFoundError, Unauthenticated, ValidationError
from records import is_valid_email, normalize_email

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'techascend'


@dataclass(frozen=True)
class Identity:
    id: Optional[str] = None
    email: str = ''

    @property
    def is_authenticated(self) -> bool:
        return self.id is not None


ANONYMOUS = Identity()


def _bearer_token(request, cookie_name):
    auth = request.headers.get('Authorization', '')
    if auth.startswith('Bearer '):
        token = auth[len('Bearer '):].strip()
        if token:
            return token
    if cookie_name:
        return request.cookies.get(cookie_name) or None
    return None


def _profile_email(profile):
    """Pick the caller's email out of a provider profile"""
    if profile.get('email'):
        return profile['email']
    primary = profile.get('primary_email_address')
    if isinstance(primary, dict):
        primary = primary.get('email_address')
    if primary:
        return primary
    addresses = profile.get('email_addresses') or []
    if addresses and isinstance(addresses[0], dict):
        return addresses[0].get('email_address', '')
    return ''


class ProviderIdentityResolver:
    """Resolve callers against an external identity provider's userinfo endpoint"""

    def __init__(self, userinfo_url, cookie_name='__session', timeout=5):
        self.userinfo_url = userinfo_url
        self.cookie_name = cookie_name
        self.timeout = timeout
        if not userinfo_url:
            logger.warning("IDENTITY_USERINFO_URL not set; every caller is anonymous")

    def __call__(self, request):
        token = _bearer_token(request, self.cookie_name)
        if not token or not self.userinfo_url:
            return ANONYMOUS
        try:
            r = requests.get(self.userinfo_url,
                             headers={'Authorization': f'Bearer {token}'},
                             timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Identity provider unreachable: {e}")
            raise InternalError('Authentication failed')
        if r.status_code in (401, 403):
            return ANONYMOUS
        if r.status_code >= 400:
            logger.error(f"Identity provider error {r.status_code}: {r.text[:200]}")
            raise InternalError('Authentication failed')
        try:
            profile = r.json()
        except ValueError:
            logger.error("Identity provider returned a non-JSON profile")
            raise InternalError('Authentication failed')
        user_id = profile.get('sub') or profile.get('id')
        if not user_id:
            return ANONYMOUS
        return Identity(id=str(user_id), email=normalize_email(_profile_email(profile)))


class AdminRegistry:
    """Admin emails plus the one super admin that can never be removed"""

    def __init__(self, store):
        self.store = store

    def seed(self, emails):
        if self.store.seed_admins(emails):
            logger.info(f"Seeded admin registry with {len(emails)} address(es)")

    def is_admin(self, email):
        email = normalize_email(email)
        return bool(email) and email in self.store.get_admins()['admins']

    def is_super_admin(self, email):
        email = normalize_email(email)
        return bool(email) and email == self.store.get_admins()['superAdmin']

    def list_admins(self):
        registry = self.store.get_admins()
        return registry['admins'], registry['superAdmin']

    def add_admin(self, email):
        if not email:
            raise ValidationError('Email is required')
        if not is_valid_email(str(email)):
            raise ValidationError('Invalid email format')
        admins = self.store.add_admin(normalize_email(email))
        logger.info(f"Added admin {normalize_email(email)}")
        return admins

    def remove_admin(self, email):
        if not email:
            raise ValidationError('Email is required')
        email = normalize_email(email)
        if self.is_super_admin(email):
            raise ForbiddenError('Cannot remove super admin. This account is protected.')
        admins = self.store.remove_admin(email)
        if admins is None:
            raise NotFoundError('User is not an admin')
        logger.info(f"Removed admin {email}")
        return admins


# ========================================
# Authorization gate
# ========================================

def _services():
    return current_app.extensions[EXTENSION_KEY]


def resolve_identity(request=None):
    request = request or flask_request
    return _services()['identity_resolver'](request)


def require_authenticated(request=None):
    identity = resolve_identity(request)
    if not identity.is_authenticated:
        raise Unauthenticated('Unauthorized - Please sign in')
    return identity


def require_admin(request=None):
    identity = require_authenticated(request)
    if not identity.email or not _services()['registry'].is_admin(identity.email):
        raise ForbiddenError('Forbidden - Admin access required')
    return identity


def login_required(f):
    """Decorator for API routes requiring a signed-in caller"""
    @wraps(f)
    def decorated(*args, **kwargs):
        g.identity = require_authenticated()
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    """Decorator for API routes requiring an admin caller"""
    @wraps(f)
    def decorated(*args, **kwargs):
        g.identity = require_admin()
        return f(*args, **kwargs)
    return decorated
