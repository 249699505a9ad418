import pytest

from auth import ANONYMOUS, Identity
from flask_app import create_app
from stores import JsonFileStore

SUPER_ADMIN = 'boss@techascend.org'
ADMIN = 'admin@techascend.org'
STUDENT = 'student@college.edu'


class FakeResolver:
    """Maps bearer tokens straight to identities"""

    def __init__(self):
        self.tokens = {
            'super': Identity(id='user_super', email=SUPER_ADMIN),
            # Provider casing differs from the registry on purpose
            'admin': Identity(id='user_admin', email='Admin@TechAscend.org'),
            'student': Identity(id='user_student', email=STUDENT),
            'no-email': Identity(id='user_phone_only', email=''),
        }

    def __call__(self, request):
        auth = request.headers.get('Authorization', '')
        return self.tokens.get(auth.replace('Bearer ', ''), ANONYMOUS)


def bearer(token):
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def store(tmp_path):
    store = JsonFileStore(str(tmp_path / 'data'))
    store.open()
    return store


@pytest.fixture
def app(store, resolver, tmp_path):
    app = create_app(
        config={
            'TESTING': True,
            'DATA_DIR': str(tmp_path / 'data'),
            'ADMIN_EMAILS': [SUPER_ADMIN, ADMIN],
            'MAIL_ENABLED': False,
        },
        store=store,
        identity_resolver=resolver,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()
