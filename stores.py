"""
Storage backends for events, registrations, settings and the admin registry.

Two interchangeable stores share one interface:

* ``JsonFileStore`` keeps each collection in a JSON file under the data
  directory. Read-modify-write sequences are serialized per file with an
  in-process lock and written through a temp file + rename. Separate worker
  processes do not share those locks, so two processes can still race
  (lost updates, duplicate registrations for the same email and event).
* ``MongoStore`` keeps the same records in MongoDB, where unique indexes
  enforce event id, registration id and (email, eventId) uniqueness; the
  losing writer gets a ``ConflictError``.

Handlers receive the store from the app (see ``flask_app.get_store``) and
never touch files or the database directly.
"""

import os
import json
import shutil
import tempfile
import threading
import logging
from copy import deepcopy
from datetime import datetime, timezone
from functools import wraps

from pymongo import MongoClient, ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import DEFAULT_SETTINGS
from errors import ConflictError, InternalError
from records import normalize_email

logger = logging.getLogger(__name__)

ALREADY_REGISTERED = 'Already registered'
ALREADY_ADMIN = 'User is already an admin'


def storage_errors(*error_types):
    """Turn backend failures into InternalError at the store boundary"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except error_types as e:
                logger.error(f"Storage failure in {f.__name__}: {e}")
                raise InternalError('Storage failure')
        return decorated
    return decorator


def seed_registry(emails):
    """Initial admin registry from configured emails; the first is the super admin"""
    admins = []
    for email in emails or []:
        normalized = normalize_email(email)
        if normalized and normalized not in admins:
            admins.append(normalized)
    return {'superAdmin': admins[0] if admins else '', 'admins': admins}


# ========================================
# JSON file store
# ========================================

# Thread lock for file operations to prevent race conditions
_file_locks = {}
_file_locks_lock = threading.Lock()


def get_file_lock(filepath):
    """Get or create a lock for a specific file"""
    with _file_locks_lock:
        if filepath not in _file_locks:
            _file_locks[filepath] = threading.RLock()
        return _file_locks[filepath]


def _read_json_no_lock(filepath, default):
    """Internal: Read JSON without acquiring lock, recovering from backup if needed"""
    if not os.path.exists(filepath):
        return deepcopy(default)
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to read JSON from {filepath}: {e}")
        backup_path = filepath + '.backup'
        if not os.path.exists(backup_path):
            raise
        logger.info(f"Attempting to recover from backup: {backup_path}")
        with open(backup_path, 'r', encoding='utf-8') as f:
            return json.load(f)


def _write_json_no_lock(filepath, data):
    """Internal: Write JSON without acquiring lock (caller must hold lock)"""
    os.makedirs(os.path.dirname(filepath), exist_ok=True)

    # Create backup of existing file
    if os.path.exists(filepath):
        try:
            shutil.copy2(filepath, filepath + '.backup')
        except OSError as e:
            logger.warning(f"Could not create backup: {e}")

    # Write to temp file first, then atomic replace
    fd, temp_path = tempfile.mkstemp(suffix='.json', dir=os.path.dirname(filepath))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, filepath)
        logger.debug(f"Successfully wrote JSON to {filepath}")
    except Exception:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise


json_storage_errors = storage_errors(OSError, json.JSONDecodeError)


class JsonFileStore:
    """Flat JSON files: events.json, registrations.json, settings.json, admins.json"""

    backend = 'json'

    def __init__(self, data_dir):
        self.data_dir = data_dir
        self.events_file = os.path.join(data_dir, 'events.json')
        self.registrations_file = os.path.join(data_dir, 'registrations.json')
        self.settings_file = os.path.join(data_dir, 'settings.json')
        self.admins_file = os.path.join(data_dir, 'admins.json')

    @json_storage_errors
    def open(self):
        """Create the data directory and any missing data files"""
        os.makedirs(self.data_dir, exist_ok=True)
        defaults = {
            self.events_file: {'next_id': 1, 'events': []},
            self.registrations_file: [],
            self.settings_file: DEFAULT_SETTINGS,
        }
        for filepath, content in defaults.items():
            with get_file_lock(filepath):
                if not os.path.exists(filepath):
                    _write_json_no_lock(filepath, content)

    def close(self):
        pass

    # Events

    def _load_events(self):
        """Return (events, next_id); accepts the legacy plain-list format"""
        data = _read_json_no_lock(self.events_file, {'next_id': 1, 'events': []})
        if isinstance(data, list):
            events, next_id = data, 1
        else:
            events, next_id = data.get('events', []), data.get('next_id', 1)
        max_id = max([e.get('id', 0) for e in events], default=0)
        return events, max(next_id, max_id + 1)

    def _save_events(self, events, next_id):
        _write_json_no_lock(self.events_file, {'next_id': next_id, 'events': events})

    @json_storage_errors
    def list_events(self):
        with get_file_lock(self.events_file):
            events, _ = self._load_events()
        return events

    @json_storage_errors
    def get_event(self, event_id):
        with get_file_lock(self.events_file):
            events, _ = self._load_events()
        return next((e for e in events if e.get('id') == event_id), None)

    @json_storage_errors
    def create_event(self, build):
        """Assign the next id, build the event with it and persist it"""
        with get_file_lock(self.events_file):
            events, next_id = self._load_events()
            event = build(next_id)
            events.append(event)
            self._save_events(events, next_id + 1)
        return event

    @json_storage_errors
    def update_event(self, event_id, apply):
        with get_file_lock(self.events_file):
            events, next_id = self._load_events()
            index = next((i for i, e in enumerate(events) if e.get('id') == event_id), None)
            if index is None:
                return None
            events[index] = apply(events[index])
            self._save_events(events, next_id)
            return events[index]

    @json_storage_errors
    def delete_event(self, event_id):
        with get_file_lock(self.events_file):
            events, next_id = self._load_events()
            remaining = [e for e in events if e.get('id') != event_id]
            if len(remaining) == len(events):
                return False
            self._save_events(remaining, next_id)
            return True

    # Registrations

    def _load_registrations(self):
        return _read_json_no_lock(self.registrations_file, [])

    @json_storage_errors
    def list_registrations(self, email=None, event_id=None):
        with get_file_lock(self.registrations_file):
            registrations = self._load_registrations()
        if email is not None:
            registrations = [r for r in registrations if normalize_email(r.get('email')) == email]
        if event_id is not None:
            registrations = [r for r in registrations if r.get('eventId') == event_id]
        return registrations

    @json_storage_errors
    def registration_exists(self, email, event_id):
        with get_file_lock(self.registrations_file):
            registrations = self._load_registrations()
        return any(normalize_email(r.get('email')) == email and r.get('eventId') == event_id
                   for r in registrations)

    @json_storage_errors
    def add_registration(self, registration):
        """Duplicate check and append happen under one lock"""
        with get_file_lock(self.registrations_file):
            registrations = self._load_registrations()
            for existing in registrations:
                if (normalize_email(existing.get('email')) == registration['email']
                        and existing.get('eventId') == registration['eventId']):
                    raise ConflictError(ALREADY_REGISTERED, alreadyRegistered=True)
            registrations.append(registration)
            _write_json_no_lock(self.registrations_file, registrations)
        return registration

    @json_storage_errors
    def delete_registration(self, registration_id):
        with get_file_lock(self.registrations_file):
            registrations = self._load_registrations()
            remaining = [r for r in registrations if str(r.get('id')) != str(registration_id)]
            if len(remaining) == len(registrations):
                return False
            _write_json_no_lock(self.registrations_file, remaining)
            return True

    # Settings

    @json_storage_errors
    def get_settings(self):
        with get_file_lock(self.settings_file):
            stored = _read_json_no_lock(self.settings_file, DEFAULT_SETTINGS)
        settings = dict(DEFAULT_SETTINGS)
        settings.update(stored)
        return settings

    @json_storage_errors
    def update_settings(self, merge):
        with get_file_lock(self.settings_file):
            current = dict(DEFAULT_SETTINGS)
            current.update(_read_json_no_lock(self.settings_file, DEFAULT_SETTINGS))
            merged = merge(current)
            _write_json_no_lock(self.settings_file, merged)
        return merged

    # Admin registry

    @json_storage_errors
    def seed_admins(self, emails):
        """Create admins.json from the configured seed if it does not exist yet"""
        with get_file_lock(self.admins_file):
            if os.path.exists(self.admins_file):
                return False
            _write_json_no_lock(self.admins_file, seed_registry(emails))
            return True

    @json_storage_errors
    def get_admins(self):
        with get_file_lock(self.admins_file):
            data = _read_json_no_lock(self.admins_file, seed_registry([]))
        return {
            'superAdmin': normalize_email(data.get('superAdmin')),
            'admins': [normalize_email(a) for a in data.get('admins', [])],
        }

    @json_storage_errors
    def add_admin(self, email):
        with get_file_lock(self.admins_file):
            data = _read_json_no_lock(self.admins_file, seed_registry([]))
            admins = [normalize_email(a) for a in data.get('admins', [])]
            if email in admins:
                raise ConflictError(ALREADY_ADMIN)
            admins.append(email)
            data['admins'] = admins
            _write_json_no_lock(self.admins_file, data)
        return admins

    @json_storage_errors
    def remove_admin(self, email):
        """Remove a non-super admin; returns the new list or None if absent"""
        with get_file_lock(self.admins_file):
            data = _read_json_no_lock(self.admins_file, seed_registry([]))
            admins = [normalize_email(a) for a in data.get('admins', [])]
            if email not in admins or email == normalize_email(data.get('superAdmin')):
                return None
            admins.remove(email)
            data['admins'] = admins
            _write_json_no_lock(self.admins_file, data)
        return admins

    def health_check(self):
        return os.path.isdir(self.data_dir)


# ========================================
# MongoDB store
# ========================================

mongo_storage_errors = storage_errors(PyMongoError)

NO_ID = {'_id': 0}


class MongoStore:
    """MongoDB collections: events, registrations, settings, admins, counters"""

    backend = 'mongo'

    def __init__(self, uri, db_name, client=None):
        self.uri = uri
        self.db_name = db_name
        self._client = client
        self.db = None

    @mongo_storage_errors
    def open(self):
        if self._client is None:
            self._client = MongoClient(self.uri, serverSelectionTimeoutMS=2000)
        self.db = self._client[self.db_name]
        self.ensure_indexes()
        self.sync_event_counter()

    def close(self):
        if self._client is not None:
            self._client.close()

    def ensure_indexes(self):
        self.db['events'].create_index('id', unique=True)
        self.db['registrations'].create_index('id', unique=True)
        self.db['registrations'].create_index(
            [('email', ASCENDING), ('eventId', ASCENDING)], unique=True)
        self.db['admins'].create_index('email', unique=True)
        self.db['settings'].create_index('key', unique=True)

    # Events

    def sync_event_counter(self):
        """Raise the event id counter to at least the highest stored event id"""
        last = self.db['events'].find_one({}, NO_ID, sort=[('id', -1)])
        max_id = last['id'] if last else 0
        try:
            self.db['counters'].update_one(
                {'_id': 'events'}, {'$max': {'seq': max_id}}, upsert=True)
        except DuplicateKeyError:
            # Another process created the counter first
            self.db['counters'].update_one({'_id': 'events'}, {'$max': {'seq': max_id}})

    def _next_event_id(self):
        counter = self.db['counters'].find_one_and_update(
            {'_id': 'events'}, {'$inc': {'seq': 1}},
            return_document=ReturnDocument.AFTER)
        return counter['seq']

    @mongo_storage_errors
    def list_events(self):
        return list(self.db['events'].find({}, NO_ID).sort('id', ASCENDING))

    @mongo_storage_errors
    def get_event(self, event_id):
        return self.db['events'].find_one({'id': event_id}, NO_ID)

    @mongo_storage_errors
    def create_event(self, build):
        event = build(self._next_event_id())
        try:
            self.db['events'].insert_one(dict(event))
        except DuplicateKeyError:
            raise ConflictError('Event ID already exists')
        return event

    @mongo_storage_errors
    def update_event(self, event_id, apply):
        existing = self.get_event(event_id)
        if existing is None:
            return None
        updated = apply(existing)
        result = self.db['events'].replace_one({'id': event_id}, dict(updated))
        if result.matched_count == 0:
            return None
        return updated

    @mongo_storage_errors
    def delete_event(self, event_id):
        return self.db['events'].delete_one({'id': event_id}).deleted_count > 0

    # Registrations

    @mongo_storage_errors
    def list_registrations(self, email=None, event_id=None):
        query = {}
        if email is not None:
            query['email'] = email
        if event_id is not None:
            query['eventId'] = event_id
        return list(self.db['registrations'].find(query, NO_ID).sort('registeredAt', ASCENDING))

    @mongo_storage_errors
    def registration_exists(self, email, event_id):
        return self.db['registrations'].count_documents(
            {'email': email, 'eventId': event_id}, limit=1) > 0

    @mongo_storage_errors
    def add_registration(self, registration):
        try:
            self.db['registrations'].insert_one(dict(registration))
        except DuplicateKeyError:
            raise ConflictError(ALREADY_REGISTERED, alreadyRegistered=True)
        return registration

    @mongo_storage_errors
    def delete_registration(self, registration_id):
        result = self.db['registrations'].delete_one({'id': str(registration_id)})
        return result.deleted_count > 0

    # Settings

    @mongo_storage_errors
    def get_settings(self):
        settings = dict(DEFAULT_SETTINGS)
        for doc in self.db['settings'].find({}, NO_ID):
            settings[doc['key']] = doc.get('value')
        return settings

    @mongo_storage_errors
    def update_settings(self, merge):
        merged = merge(self.get_settings())
        for key, value in merged.items():
            self.db['settings'].update_one(
                {'key': key}, {'$set': {'value': value}}, upsert=True)
        return merged

    # Admin registry

    @mongo_storage_errors
    def seed_admins(self, emails):
        if self.db['admins'].count_documents({}, limit=1) > 0:
            return False
        registry = seed_registry(emails)
        now = datetime.now(timezone.utc)
        for email in registry['admins']:
            self._insert_admin(email, now, email == registry['superAdmin'])
        return True

    def _insert_admin(self, email, added_at, super_admin=False):
        self.db['admins'].insert_one({
            'email': email,
            'addedAt': added_at,
            'superAdmin': super_admin,
        })

    @mongo_storage_errors
    def get_admins(self):
        docs = list(self.db['admins'].find({}, NO_ID).sort('addedAt', ASCENDING))
        super_admin = next((d['email'] for d in docs if d.get('superAdmin')), '')
        return {'superAdmin': super_admin, 'admins': [d['email'] for d in docs]}

    @mongo_storage_errors
    def add_admin(self, email):
        try:
            self._insert_admin(email, datetime.now(timezone.utc))
        except DuplicateKeyError:
            raise ConflictError(ALREADY_ADMIN)
        return self.get_admins()['admins']

    @mongo_storage_errors
    def remove_admin(self, email):
        result = self.db['admins'].delete_one({'email': email, 'superAdmin': {'$ne': True}})
        if result.deleted_count == 0:
            return None
        return self.get_admins()['admins']

    def health_check(self):
        try:
            self._client.admin.command('ping')
            return True
        except PyMongoError:
            return False

    # Import from the JSON files

    @mongo_storage_errors
    def import_records(self, source):
        """Upsert everything held by another store; returns per-collection counts"""
        events = source.list_events()
        for event in events:
            self.db['events'].update_one({'id': event['id']}, {'$set': event}, upsert=True)

        registrations = source.list_registrations()
        for registration in registrations:
            registration = dict(registration, id=str(registration['id']))
            self.db['registrations'].update_one(
                {'id': registration['id']}, {'$set': registration}, upsert=True)

        registry = source.get_admins()
        for email in registry['admins']:
            self.db['admins'].update_one(
                {'email': email},
                {'$set': {'email': email},
                 '$setOnInsert': {'addedAt': datetime.now(timezone.utc),
                                  'superAdmin': email == registry['superAdmin']}},
                upsert=True)

        settings = source.get_settings()
        for key, value in settings.items():
            self.db['settings'].update_one({'key': key}, {'$set': {'value': value}}, upsert=True)

        self.sync_event_counter()
        return {
            'events': len(events),
            'registrations': len(registrations),
            'admins': len(registry['admins']),
            'settings': len(settings),
        }


def open_store(config):
    """Build and open the store selected by STORAGE_BACKEND"""
    backend = config.get('STORAGE_BACKEND', 'json')
    if backend == 'mongo':
        store = MongoStore(config['MONGO_URI'], config['MONGO_DB_NAME'])
    elif backend == 'json':
        store = JsonFileStore(config['DATA_DIR'])
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")
    store.open()
    logger.info(f"Opened {store.backend} store")
    return store
