import asyncio
import inspect
import os
import sys
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

# Ensure the repository root is on sys.path so tests can import the keygate package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('ENVIRONMENT', 'development')
os.environ.setdefault('ADMIN_PASSWORD', 'test-admin-password')
os.environ.setdefault('KEYGATE_OFFLINE_ENGINE', '1')
os.environ.setdefault('KEYGATE_DATA_DIR', tempfile.mkdtemp(prefix='keygate-data-'))
os.environ.setdefault('CLAUDE_HOME', tempfile.mkdtemp(prefix='keygate-home-'))

from keygate.claude_auth import ClaudeAuthStore  # noqa: E402
from keygate.config import Settings, get_settings, hash_admin_password  # noqa: E402
from keygate.key_manager import KeyRegistry  # noqa: E402

ADMIN_PASSWORD = 'test-admin-password'
OAUTH_TOKEN_A = 'sk-ant-oat01-' + 'a' * 40 + 'AAAA'
OAUTH_TOKEN_B = 'sk-ant-oat01-' + 'b' * 40 + 'BBBB'


try:
    import pytest_asyncio  # type: ignore  # noqa: F401
except ImportError:

    @pytest.hookimpl(tryfirst=True)
    def pytest_pyfunc_call(pyfuncitem):
        """Run ``async def`` tests via ``asyncio.run`` when pytest-asyncio is missing."""

        if inspect.iscoroutinefunction(pyfuncitem.obj):
            testargs = {
                name: pyfuncitem.funcargs[name]
                for name in pyfuncitem._fixtureinfo.argnames
            }
            asyncio.run(pyfuncitem.obj(**testargs))
            return True
        return None


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def password_hash() -> str:
    return hash_admin_password(ADMIN_PASSWORD)


@pytest.fixture
def claude_home(tmp_path: Path) -> Path:
    home = tmp_path / 'home'
    home.mkdir()
    return home


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / 'data'


@pytest.fixture
def credential_store(claude_home: Path) -> ClaudeAuthStore:
    return ClaudeAuthStore(claude_home)


@pytest.fixture
def registry(data_dir: Path, credential_store: ClaudeAuthStore, password_hash: str) -> KeyRegistry:
    instance = KeyRegistry(data_dir, credential_store, password_hash)
    instance.initialize()
    return instance


@pytest.fixture
def settings(data_dir: Path, claude_home: Path, password_hash: str) -> Settings:
    return Settings(
        environment='development',
        admin_password_hash=password_hash,
        data_dir=data_dir,
        claude_home=claude_home,
        offline_engine=True,
    )


@pytest.fixture
def production_settings(settings: Settings) -> Settings:
    return replace(settings, environment='production')


@pytest.fixture
def client(settings: Settings) -> Iterator[TestClient]:
    """Yield a test client for an app bound to temporary directories."""

    from keygate.main import create_app

    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def admin_client(client: TestClient) -> TestClient:
    """A client holding a valid admin session."""

    response = client.post('/auth/login', json={'adminPassword': ADMIN_PASSWORD})
    assert response.status_code == 200
    return client
