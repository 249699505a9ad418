"""
Configuration for the Tech Ascend registration service
Values come from environment variables; data files live in the data/ folder
unless DATA_DIR points elsewhere
"""

import os
from datetime import timezone, timedelta

# Get the directory of this file
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get('DATA_DIR', os.path.join(BASE_DIR, 'data'))

# IST Timezone (UTC+5:30), used for naive event deadlines
IST = timezone(timedelta(hours=5, minutes=30))

EVENT_MODES = ('Online', 'Offline', 'Hybrid')

DEFAULT_SETTINGS = {
    'registrationOpen': True
}


def env_bool(name, default=False):
    """Read a boolean flag from the environment"""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def env_list(name):
    """Read a comma separated list from the environment"""
    value = os.environ.get(name, '')
    return [item.strip() for item in value.split(',') if item.strip()]


def load_config():
    """Build the Flask config mapping from the environment"""
    return {
        'SECRET_KEY': os.environ.get('FLASK_SECRET_KEY', 'your-secret-key-change-this-in-production'),
        'LOG_LEVEL': os.environ.get('LOG_LEVEL', 'INFO'),
        'DATA_DIR': DATA_DIR,
        'STORAGE_BACKEND': os.environ.get('STORAGE_BACKEND', 'json').lower(),
        'MONGO_URI': os.environ.get('MONGO_URI', 'mongodb://localhost:27017'),
        'MONGO_DB_NAME': os.environ.get('MONGO_DB_NAME', 'techascend'),
        # First address becomes the super admin when the registry is seeded
        'ADMIN_EMAILS': env_list('ADMIN_EMAILS'),
        'IDENTITY_USERINFO_URL': os.environ.get('IDENTITY_USERINFO_URL', ''),
        'IDENTITY_SESSION_COOKIE': os.environ.get('IDENTITY_SESSION_COOKIE', '__session'),
        'IDENTITY_TIMEOUT': float(os.environ.get('IDENTITY_TIMEOUT', '5')),
        'LOCAL_TIMEZONE': IST,
        'SOCIETY_NAME': os.environ.get('SOCIETY_NAME', 'Tech Ascend'),
        'MAIL_ENABLED': env_bool('MAIL_ENABLED'),
        'MAIL_SERVER': os.environ.get('MAIL_SERVER', 'smtp.gmail.com'),
        'MAIL_PORT': int(os.environ.get('MAIL_PORT', '587')),
        'MAIL_USE_TLS': env_bool('MAIL_USE_TLS', True),
        'MAIL_USERNAME': os.environ.get('MAIL_USERNAME', ''),
        'MAIL_PASSWORD': os.environ.get('MAIL_PASSWORD', ''),
        'MAIL_DEFAULT_SENDER': os.environ.get('MAIL_DEFAULT_SENDER', ''),
    }
