import atexit
import logging
from datetime import datetime, timezone

from flask import Flask, Blueprint, current_app, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from auth import (EXTENSION_KEY, AdminRegistry, ProviderIdentityResolver, admin_required,
                  require_admin, require_authenticated)
from config import IST, load_config
from errors import AppError, ForbiddenError, NotFoundError, ValidationError
from mailer import mail, send_registration_email
from records import (apply_event_update, build_event, build_registration, merge_settings,
                     normalize_email, parse_event_id, with_status)
from stores import JsonFileStore, open_store

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


def get_store():
    return current_app.extensions[EXTENSION_KEY]['store']


def get_registry():
    return current_app.extensions[EXTENSION_KEY]['registry']


def json_body():
    """Request body as a dict; anything else is a validation error"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('No data provided')
    return data


def _local_tz():
    return current_app.config.get('LOCAL_TIMEZONE', IST)


def _event_view(event, settings):
    """Event as returned to callers, with its derived registration status"""
    return with_status(event, settings, datetime.now(timezone.utc), _local_tz())


# ========================================
# Events
# ========================================

@api.route('/events', methods=['GET'])
def list_events():
    """Public: all events, or one event by ?id="""
    store = get_store()
    settings = store.get_settings()
    event_id = request.args.get('id')
    if event_id:
        event = store.get_event(parse_event_id(event_id))
        if not event:
            raise NotFoundError('Event not found')
        return jsonify({'event': _event_view(event, settings)})
    return jsonify({'events': [_event_view(e, settings) for e in store.list_events()]})


@api.route('/events', methods=['POST'])
@admin_required
def create_event():
    data = json_body()
    tz = _local_tz()
    event = get_store().create_event(lambda event_id: build_event(data, event_id, tz))
    logger.info(f"Event {event['id']} created by {g.identity.email}")
    return jsonify({'success': True, 'event': event}), 201


@api.route('/events', methods=['PUT'])
@admin_required
def update_event():
    data = json_body()
    if data.get('id') in (None, ''):
        raise ValidationError('Event ID required')
    event_id = parse_event_id(data['id'])
    tz = _local_tz()
    event = get_store().update_event(event_id, lambda existing: apply_event_update(existing, data, tz))
    if event is None:
        raise NotFoundError('Event not found')
    logger.info(f"Event {event_id} updated by {g.identity.email}")
    return jsonify({'success': True, 'event': event})


@api.route('/events', methods=['DELETE'])
@admin_required
def delete_event():
    event_id = request.args.get('id')
    if not event_id:
        raise ValidationError('Event ID required')
    event_id = parse_event_id(event_id)
    if not get_store().delete_event(event_id):
        raise NotFoundError('Event not found')
    logger.info(f"Event {event_id} deleted by {g.identity.email}")
    return jsonify({'success': True})


# ========================================
# Registrations
# ========================================

@api.route('/registrations', methods=['GET'])
def list_registrations():
    """
    ?email=&eventId=  public yes/no lookup, no record contents
    ?email=           the signed-in caller's own registrations
    (no email)        admins only, optionally filtered by ?eventId=
    """
    store = get_store()
    email = request.args.get('email')
    event_id = request.args.get('eventId')

    if email and event_id:
        registered = store.registration_exists(normalize_email(email), parse_event_id(event_id))
        return jsonify({'isRegistered': registered})

    if email:
        identity = require_authenticated()
        own_email = normalize_email(identity.email)
        if not own_email or normalize_email(email) != own_email:
            raise ForbiddenError('Forbidden - Can only view own registrations')
        return jsonify({'registrations': store.list_registrations(email=own_email)})

    require_admin()
    event_filter = parse_event_id(event_id) if event_id else None
    return jsonify({'registrations': store.list_registrations(event_id=event_filter)})


@api.route('/registrations', methods=['POST'])
def create_registration():
    """Public: register for an event, once per email and event"""
    data = json_body()
    store = get_store()
    event = None
    if data.get('eventId') not in (None, '') and not data.get('eventName'):
        event = store.get_event(parse_event_id(data['eventId']))
    registration = store.add_registration(build_registration(data, event))
    logger.info(f"Registration {registration['id']} for event {registration['eventId']}")
    email_sent = send_registration_email(registration)
    return jsonify({'success': True, 'registration': registration, 'emailSent': email_sent}), 201


@api.route('/registrations', methods=['DELETE'])
@admin_required
def delete_registration():
    registration_id = request.args.get('id')
    if not registration_id:
        raise ValidationError('Missing registration ID')
    if not get_store().delete_registration(registration_id):
        raise NotFoundError('Registration not found')
    logger.info(f"Registration {registration_id} deleted by {g.identity.email}")
    return jsonify({'success': True})


# ========================================
# Settings
# ========================================

@api.route('/settings', methods=['GET'])
def get_settings():
    return jsonify({'settings': get_store().get_settings()})


@api.route('/settings', methods=['POST'])
@admin_required
def update_settings():
    data = request.get_json(silent=True)
    settings = get_store().update_settings(lambda current: merge_settings(current, data))
    logger.info(f"Settings updated by {g.identity.email}: {data}")
    return jsonify({'success': True, 'settings': settings})


# ========================================
# Admins
# ========================================

@api.route('/admins', methods=['GET'])
@admin_required
def list_admins():
    admins, super_admin = get_registry().list_admins()
    return jsonify({'admins': admins, 'superAdmin': super_admin})


@api.route('/admins', methods=['POST'])
@admin_required
def add_admin():
    email = json_body().get('email')
    admins = get_registry().add_admin(email)
    return jsonify({
        'success': True,
        'message': f'{normalize_email(email)} has been added as admin',
        'admins': admins
    }), 201


@api.route('/admins', methods=['DELETE'])
@admin_required
def remove_admin():
    email = request.args.get('email')
    admins = get_registry().remove_admin(email)
    return jsonify({
        'success': True,
        'message': f'{normalize_email(email)} has been removed from admin',
        'admins': admins
    })


# ========================================
# Maintenance
# ========================================

@api.route('/migrate', methods=['GET'])
@admin_required
def migrate():
    """Copy the JSON data files into the active MongoDB store"""
    store = get_store()
    if store.backend != 'mongo':
        raise ValidationError('Migration requires STORAGE_BACKEND=mongo')
    migrated = store.import_records(JsonFileStore(current_app.config['DATA_DIR']))
    logger.info(f"Migration by {g.identity.email}: {migrated}")
    return jsonify({'success': True, 'migrated': migrated})


@api.route('/health', methods=['GET'])
def health():
    store = get_store()
    if not store.health_check():
        return jsonify({'ok': False, 'storage': store.backend, 'error': 'Storage unavailable'}), 500
    return jsonify({'ok': True, 'storage': store.backend})


# ========================================
# Error Handlers
# ========================================

def handle_app_error(e):
    return jsonify(e.to_dict()), e.status_code


def handle_http_error(e):
    return jsonify({'error': e.description}), e.code


def handle_unexpected_error(e):
    logger.exception(f"Unhandled error: {e}")
    return jsonify({'error': 'Internal server error'}), 500


def create_app(config=None, store=None, identity_resolver=None):
    """
    Build the Flask app. `store` and `identity_resolver` are injected by tests;
    otherwise they come from the configuration.
    """
    app = Flask(__name__)
    app.config.update(load_config())
    if config:
        app.config.update(config)

    logging.basicConfig(level=app.config['LOG_LEVEL'])

    # CORS: Allow all origins on all endpoints
    CORS(app)
    mail.init_app(app)

    if store is None:
        store = open_store(app.config)
        atexit.register(store.close)
    if identity_resolver is None:
        identity_resolver = ProviderIdentityResolver(
            app.config['IDENTITY_USERINFO_URL'],
            cookie_name=app.config['IDENTITY_SESSION_COOKIE'],
            timeout=app.config['IDENTITY_TIMEOUT'],
        )

    registry = AdminRegistry(store)
    registry.seed(app.config['ADMIN_EMAILS'])

    app.extensions[EXTENSION_KEY] = {
        'store': store,
        'registry': registry,
        'identity_resolver': identity_resolver,
    }

    app.register_blueprint(api)
    app.register_error_handler(AppError, handle_app_error)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)
    return app


if __name__ == '__main__':
    app = create_app()
    app.run(debug=True, host='0.0.0.0', port=5000)
