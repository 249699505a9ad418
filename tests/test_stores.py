import json
from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConflictError, InternalError
from stores import JsonFileStore, MongoStore, open_store


def make_event(event_id):
    return {'id': event_id, 'name': f'Event {event_id}'}


def make_registration(reg_id, email='a@x.com', event_id=1):
    return {'id': reg_id, 'name': 'A', 'email': email, 'eventId': event_id}


# JSON file store

def test_json_event_ids_never_reused(store):
    assert store.create_event(make_event)['id'] == 1
    assert store.create_event(make_event)['id'] == 2
    assert store.delete_event(2)
    assert store.create_event(make_event)['id'] == 3
    assert [e['id'] for e in store.list_events()] == [1, 3]


def test_json_reads_legacy_event_list(tmp_path):
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    (data_dir / 'events.json').write_text(json.dumps([{'id': 7, 'name': 'BugHunt'}]))
    store = JsonFileStore(str(data_dir))
    store.open()
    assert store.get_event(7)['name'] == 'BugHunt'
    assert store.create_event(make_event)['id'] == 8


def test_json_update_event(store):
    store.create_event(make_event)
    updated = store.update_event(1, lambda e: dict(e, name='Renamed'))
    assert updated['name'] == 'Renamed'
    assert store.get_event(1)['name'] == 'Renamed'
    assert store.update_event(9, lambda e: e) is None


def test_json_duplicate_registration(store):
    store.add_registration(make_registration('r1'))
    with pytest.raises(ConflictError) as excinfo:
        store.add_registration(make_registration('r2'))
    assert excinfo.value.extra == {'alreadyRegistered': True}
    assert store.registration_exists('a@x.com', 1)
    assert not store.registration_exists('a@x.com', 2)


def test_json_delete_registration_accepts_legacy_numeric_ids(store):
    store.add_registration(make_registration(1733312345678))
    assert store.delete_registration('1733312345678')
    assert store.list_registrations() == []


def test_json_recovers_from_backup(store):
    store.add_registration(make_registration('r1'))
    store.add_registration(make_registration('r2', email='b@x.com'))
    with open(store.registrations_file, 'w') as f:
        f.write('{broken')
    assert [r['id'] for r in store.list_registrations()] == ['r1']


def test_json_corrupt_file_without_backup_is_internal_error(store):
    with open(store.settings_file, 'w') as f:
        f.write('{broken')
    with pytest.raises(InternalError):
        store.get_settings()


def test_json_settings_persist(store):
    store.update_settings(lambda current: dict(current, registrationOpen=False))
    reopened = JsonFileStore(store.data_dir)
    assert reopened.get_settings() == {'registrationOpen': False}


def test_open_store_selects_backend(tmp_path):
    store = open_store({'STORAGE_BACKEND': 'json', 'DATA_DIR': str(tmp_path / 'd')})
    assert store.backend == 'json'
    with pytest.raises(ValueError):
        open_store({'STORAGE_BACKEND': 'redis'})


# MongoDB store

@pytest.fixture
def mongo():
    collections = {name: MagicMock() for name in ('events', 'registrations', 'admins', 'settings', 'counters')}
    collections['events'].find_one.return_value = {'id': 4}
    db = MagicMock()
    db.__getitem__.side_effect = lambda name: collections[name]
    client = MagicMock()
    client.__getitem__.return_value = db
    store = MongoStore('mongodb://unused', 'techascend_test', client=client)
    store.open()
    return store, collections


def test_mongo_creates_unique_indexes(mongo):
    _, collections = mongo
    collections['registrations'].create_index.assert_any_call(
        [('email', 1), ('eventId', 1)], unique=True)
    collections['events'].create_index.assert_called_once_with('id', unique=True)


def test_mongo_open_raises_counter_to_highest_event_id(mongo):
    _, collections = mongo
    collections['counters'].update_one.assert_called_once_with(
        {'_id': 'events'}, {'$max': {'seq': 4}}, upsert=True)


def test_mongo_event_id_from_counter(mongo):
    store, collections = mongo
    collections['counters'].update_one.reset_mock()
    collections['counters'].find_one_and_update.return_value = {'_id': 'events', 'seq': 5}

    event = store.create_event(make_event)

    assert event == {'id': 5, 'name': 'Event 5'}
    # A single atomic increment per event; no upserts racing on the counter
    collections['counters'].update_one.assert_not_called()
    args, kwargs = collections['counters'].find_one_and_update.call_args
    assert args == ({'_id': 'events'}, {'$inc': {'seq': 1}})
    assert 'upsert' not in kwargs
    collections['events'].insert_one.assert_called_once_with({'id': 5, 'name': 'Event 5'})


def test_mongo_counter_created_by_another_process():
    collections = {name: MagicMock() for name in ('events', 'registrations', 'admins', 'settings', 'counters')}
    collections['events'].find_one.return_value = None
    collections['counters'].update_one.side_effect = [DuplicateKeyError('E11000 duplicate key'), None]
    db = MagicMock()
    db.__getitem__.side_effect = lambda name: collections[name]
    client = MagicMock()
    client.__getitem__.return_value = db

    MongoStore('mongodb://unused', 'techascend_test', client=client).open()

    last_call = collections['counters'].update_one.call_args
    assert last_call.args == ({'_id': 'events'}, {'$max': {'seq': 0}})
    assert last_call.kwargs == {}


def test_mongo_duplicate_registration_is_conflict(mongo):
    store, collections = mongo
    collections['registrations'].insert_one.side_effect = DuplicateKeyError('E11000 duplicate key')
    with pytest.raises(ConflictError) as excinfo:
        store.add_registration(make_registration('r1'))
    assert excinfo.value.extra == {'alreadyRegistered': True}


def test_mongo_duplicate_admin_is_conflict(mongo):
    store, collections = mongo
    collections['admins'].insert_one.side_effect = DuplicateKeyError('E11000 duplicate key')
    with pytest.raises(ConflictError):
        store.add_admin('a@x.com')


def test_mongo_remove_admin_skips_super_admin(mongo):
    store, collections = mongo
    collections['admins'].delete_one.return_value.deleted_count = 0
    assert store.remove_admin('boss@club.org') is None
    collections['admins'].delete_one.assert_called_once_with(
        {'email': 'boss@club.org', 'superAdmin': {'$ne': True}})


def test_mongo_failure_is_internal_error(mongo):
    store, collections = mongo
    collections['events'].find.side_effect = PyMongoError('connection refused')
    with pytest.raises(InternalError):
        store.list_events()


def test_mongo_settings_overlay_defaults(mongo):
    store, collections = mongo
    collections['settings'].find.return_value = [{'key': 'banner', 'value': 'Soon'}]
    assert store.get_settings() == {'registrationOpen': True, 'banner': 'Soon'}


def test_mongo_import_from_json(mongo, store):
    mongo_store, collections = mongo
    store.create_event(make_event)
    store.add_registration(make_registration(1733312345678))
    store.seed_admins(['boss@club.org'])

    migrated = mongo_store.import_records(store)

    assert migrated == {'events': 1, 'registrations': 1, 'admins': 1, 'settings': 1}
    collections['registrations'].update_one.assert_called_once()
    query = collections['registrations'].update_one.call_args[0][0]
    assert query == {'id': '1733312345678'}
