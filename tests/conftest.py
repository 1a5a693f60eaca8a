import pytest

BUNNY_ENV_VARS = (
    'BUNNY_STORAGE_ZONE_NAME',
    'BUNNY_STORAGE_ZONE_PASSWORD',
    'BUNNY_STORAGE_ZONE_REGION',
    'BUNNY_PULL_ZONE_NAME',
    'BUNNY_PULL_ZONE_URL',
    'BUNNY_STREAM_API_KEY',
    'BUNNY_STREAM_LIBRARY_ID',
)


@pytest.fixture(autouse=True)
def no_cdn_credentials(monkeypatch):
    """Tests start without Bunny credentials, whatever the local .env holds."""
    for name in BUNNY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / 'input.mp4'
    path.write_bytes(b'v' * 100)
    return str(path)
