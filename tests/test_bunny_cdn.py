from unittest import mock

import pytest
import requests

import bunny_cdn
from bunny_cdn import (
    BunnyCDNError,
    cdn_url,
    normalize_folder,
    storage_host,
    upload_compressed_video,
    upload_to_bunny_storage,
    upload_to_bunny_stream,
)


def fake_response(status_code=200, json_data=None, text=''):
    response = mock.Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = text
    response.json.return_value = json_data if json_data is not None else {}
    if response.ok:
        response.raise_for_status.return_value = None
    else:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


@pytest.fixture
def storage_env(monkeypatch):
    monkeypatch.setenv('BUNNY_STORAGE_ZONE_NAME', 'myzone')
    monkeypatch.setenv('BUNNY_STORAGE_ZONE_PASSWORD', 'secret')


@pytest.fixture
def stream_env(monkeypatch):
    monkeypatch.setenv('BUNNY_STREAM_API_KEY', 'stream-key')
    monkeypatch.setenv('BUNNY_STREAM_LIBRARY_ID', '123')


class TestStorageHost:

    @pytest.mark.parametrize('region, host', [
        (None, 'storage.bunnycdn.com'),
        ('', 'storage.bunnycdn.com'),
        ('   ', 'storage.bunnycdn.com'),
        ('NY', 'ny.storage.bunnycdn.com'),
        (' london ', 'uk.storage.bunnycdn.com'),
        ('los angeles', 'la.storage.bunnycdn.com'),
        ('são paulo', 'br.storage.bunnycdn.com'),
        ('syd', 'syd.storage.bunnycdn.com'),
        ('xx', 'xx.storage.bunnycdn.com'),
    ])
    def test_regions(self, region, host):
        assert storage_host(region) == host


class TestCdnUrl:

    def test_pull_zone_name_wins(self):
        url = cdn_url('v/clip.mp4', 'zone', pull_zone_name='pz', pull_zone_url='https://other.b-cdn.net')
        assert url == 'https://pz.b-cdn.net/v/clip.mp4'

    def test_pull_zone_url(self):
        assert cdn_url('v/clip.mp4', 'zone', pull_zone_url='https://wbt-public.b-cdn.net/') == \
            'https://wbt-public.b-cdn.net/v/clip.mp4'

    def test_custom_hostname(self):
        assert cdn_url('v/clip.mp4', 'zone', pull_zone_url='cdn.example.com/') == \
            'https://cdn.example.com/v/clip.mp4'

    def test_falls_back_to_zone_name(self):
        assert cdn_url('v/clip.mp4', 'zone') == 'https://zone.b-cdn.net/v/clip.mp4'


class TestNormalizeFolder:

    @pytest.mark.parametrize('folder, expected', [
        ('/my folder/', 'my-folder'),
        ('  promo  videos ', 'promo-videos'),
        ('a/b', 'a/b'),
        ('', 'compressed-videos'),
        ('///', 'compressed-videos'),
        (None, 'compressed-videos'),
    ])
    def test_normalize(self, folder, expected):
        assert normalize_folder(folder) == expected


class TestConfigured:

    def test_nothing_configured(self):
        assert not bunny_cdn.is_configured()

    def test_storage(self, storage_env):
        assert bunny_cdn.is_configured()

    def test_stream(self, stream_env):
        assert bunny_cdn.is_configured()

    def test_half_configured(self, monkeypatch):
        monkeypatch.setenv('BUNNY_STORAGE_ZONE_NAME', 'myzone')
        assert not bunny_cdn.is_configured()


class TestStorageUpload:

    def test_upload(self, storage_env, monkeypatch, video_file):
        monkeypatch.setenv('BUNNY_STORAGE_ZONE_REGION', 'ny')
        monkeypatch.setenv('BUNNY_PULL_ZONE_NAME', 'pz')

        with mock.patch('bunny_cdn.requests.put', return_value=fake_response(201)) as put:
            result = upload_to_bunny_storage(video_file, '/videos/clip.mp4')

        assert put.call_args[0][0] == 'https://ny.storage.bunnycdn.com/myzone/videos/clip.mp4'
        assert put.call_args[1]['headers']['AccessKey'] == 'secret'
        assert result == {
            'success': True,
            'cdnUrl': 'https://pz.b-cdn.net/videos/clip.mp4',
            'storagePath': 'videos/clip.mp4',
            'fileName': 'input.mp4',
            'method': 'storage'
        }

    def test_unauthorized(self, storage_env, video_file):
        response = fake_response(401, {'Message': 'Unauthorized'})
        with mock.patch('bunny_cdn.requests.put', return_value=response):
            with pytest.raises(BunnyCDNError, match='401 Unauthorized'):
                upload_to_bunny_storage(video_file, 'videos/clip.mp4')

    def test_zone_not_found(self, storage_env, video_file):
        with mock.patch('bunny_cdn.requests.put', return_value=fake_response(404)):
            with pytest.raises(BunnyCDNError, match='zone not found.*myzone'):
                upload_to_bunny_storage(video_file, 'videos/clip.mp4')

    def test_other_failure(self, storage_env, video_file):
        with mock.patch('bunny_cdn.requests.put', return_value=fake_response(500, {'Message': 'boom'})):
            with pytest.raises(BunnyCDNError, match=r'Bunny Storage upload failed \(500\): boom'):
                upload_to_bunny_storage(video_file, 'videos/clip.mp4')

    def test_network_error(self, storage_env, video_file):
        with mock.patch('bunny_cdn.requests.put', side_effect=requests.ConnectionError('down')):
            with pytest.raises(BunnyCDNError, match='down'):
                upload_to_bunny_storage(video_file, 'videos/clip.mp4')

    def test_missing_credentials(self, video_file):
        with pytest.raises(BunnyCDNError, match='credentials not configured'):
            upload_to_bunny_storage(video_file, 'videos/clip.mp4')


class TestStreamUpload:

    def test_upload(self, stream_env, video_file):
        with mock.patch('bunny_cdn.requests.post', return_value=fake_response(200, {'guid': 'abc'})) as post, \
                mock.patch('bunny_cdn.requests.put', return_value=fake_response(200)) as put:
            result = upload_to_bunny_stream(video_file, 'My clip')

        assert post.call_args[0][0] == 'https://video.bunnycdn.com/library/123/videos'
        assert post.call_args[1]['json'] == {'title': 'My clip'}
        assert put.call_args[0][0] == 'https://video.bunnycdn.com/library/123/videos/abc'
        assert result['videoId'] == 'abc'
        assert result['videoUrl'] == 'https://vz-123.b-cdn.net/abc/play_720p.mp4'
        assert result['method'] == 'stream'
        assert result['title'] == 'My clip'

    def test_title_defaults_to_file_stem(self, stream_env, video_file):
        with mock.patch('bunny_cdn.requests.post', return_value=fake_response(200, {'guid': 'abc'})), \
                mock.patch('bunny_cdn.requests.put', return_value=fake_response(200)):
            assert upload_to_bunny_stream(video_file)['title'] == 'input'

    def test_api_error(self, stream_env, video_file):
        with mock.patch('bunny_cdn.requests.post', return_value=fake_response(401, {'Message': 'bad key'})):
            with pytest.raises(BunnyCDNError, match='Bunny Stream upload failed: bad key'):
                upload_to_bunny_stream(video_file)

    def test_missing_guid(self, stream_env, video_file):
        with mock.patch('bunny_cdn.requests.post', return_value=fake_response(200, {})):
            with pytest.raises(BunnyCDNError):
                upload_to_bunny_stream(video_file)

    def test_missing_credentials(self, video_file):
        with pytest.raises(BunnyCDNError, match='credentials not configured'):
            upload_to_bunny_stream(video_file)


class TestUploadCompressedVideo:

    def test_storage_remote_path(self, storage_env, video_file):
        with mock.patch('bunny_cdn.time') as fake_time, \
                mock.patch('bunny_cdn.upload_to_bunny_storage', return_value={'method': 'storage'}) as upload:
            fake_time.time.return_value = 1700000000.0
            result = upload_compressed_video(video_file, 'clip.mov', ' /my folder/ ')

        upload.assert_called_once_with(video_file, 'my-folder/clip_1700000000000.mp4')
        assert result == {'method': 'storage'}

    @pytest.mark.parametrize('original_name', ['../../clip.mov', '..\\..\\clip.mov', '/tmp/x/clip.mov'])
    def test_directories_are_stripped_from_name(self, storage_env, video_file, original_name):
        with mock.patch('bunny_cdn.time') as fake_time, \
                mock.patch('bunny_cdn.upload_to_bunny_storage') as upload:
            fake_time.time.return_value = 1700000000.0
            upload_compressed_video(video_file, original_name, 'promo')

        upload.assert_called_once_with(video_file, 'promo/clip_1700000000000.mp4')

    def test_name_without_file_part_uses_local_file(self, storage_env, video_file):
        with mock.patch('bunny_cdn.time') as fake_time, \
                mock.patch('bunny_cdn.upload_to_bunny_storage') as upload:
            fake_time.time.return_value = 1700000000.0
            upload_compressed_video(video_file, '../', 'promo')

        upload.assert_called_once_with(video_file, 'promo/input_1700000000000.mp4')

    def test_prefers_storage(self, storage_env, stream_env, video_file):
        with mock.patch('bunny_cdn.upload_to_bunny_storage') as storage, \
                mock.patch('bunny_cdn.upload_to_bunny_stream') as stream:
            upload_compressed_video(video_file)
        storage.assert_called_once()
        stream.assert_not_called()

    def test_stream_only(self, stream_env, video_file):
        with mock.patch('bunny_cdn.upload_to_bunny_stream') as stream:
            upload_compressed_video(video_file, 'clip.mov')
        stream.assert_called_once_with(video_file, 'clip')

    def test_nothing_configured(self, video_file):
        with pytest.raises(BunnyCDNError, match='No Bunny CDN credentials configured'):
            upload_compressed_video(video_file)
