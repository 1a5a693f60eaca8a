"""
Bunny CDN upload helpers.

Supports two services, picked from the credentials found in the environment:

1. Bunny Storage - plain file storage served through a pull zone
2. Bunny Stream - video library with its own delivery URLs

Credentials are read on every call so a reloaded .env takes effect without
restarting the server.
"""

import os
import re
import time
import logging

import requests

logger = logging.getLogger(__name__)

DEFAULT_FOLDER = 'compressed-videos'
DEFAULT_STORAGE_HOST = 'storage.bunnycdn.com'  # Frankfurt
STREAM_API_BASE = 'https://video.bunnycdn.com'

# Primary storage region -> storage API host
REGION_HOSTS = {
    'uk': 'uk.storage.bunnycdn.com',
    'london': 'uk.storage.bunnycdn.com',
    'ny': 'ny.storage.bunnycdn.com',
    'newyork': 'ny.storage.bunnycdn.com',
    'new york': 'ny.storage.bunnycdn.com',
    'la': 'la.storage.bunnycdn.com',
    'losangeles': 'la.storage.bunnycdn.com',
    'los angeles': 'la.storage.bunnycdn.com',
    'sg': 'sg.storage.bunnycdn.com',
    'singapore': 'sg.storage.bunnycdn.com',
    'se': 'se.storage.bunnycdn.com',
    'stockholm': 'se.storage.bunnycdn.com',
    'br': 'br.storage.bunnycdn.com',
    'saopaulo': 'br.storage.bunnycdn.com',
    'são paulo': 'br.storage.bunnycdn.com',
    'jh': 'jh.storage.bunnycdn.com',
    'johannesburg': 'jh.storage.bunnycdn.com',
    'syd': 'syd.storage.bunnycdn.com',
    'sydney': 'syd.storage.bunnycdn.com',
}

_PULL_ZONE_RE = re.compile(r'^([^.]+)\.b-cdn\.net')


class BunnyCDNError(Exception):
    """Raised when an upload to Bunny CDN fails."""


def _upload_timeout():
    return float(os.getenv('BUNNY_UPLOAD_TIMEOUT', '600'))


def has_storage_credentials():
    return bool(os.getenv('BUNNY_STORAGE_ZONE_NAME') and os.getenv('BUNNY_STORAGE_ZONE_PASSWORD'))


def has_stream_credentials():
    return bool(os.getenv('BUNNY_STREAM_API_KEY') and os.getenv('BUNNY_STREAM_LIBRARY_ID'))


def is_configured():
    """True when either Storage or Stream credentials are set."""
    return has_storage_credentials() or has_stream_credentials()


def storage_host(region=None):
    """Map a storage zone's primary region to its API host."""
    if not region or not region.strip():
        return DEFAULT_STORAGE_HOST
    region = region.strip().lower()
    return REGION_HOSTS.get(region, f"{region}.storage.bunnycdn.com")


def cdn_url(storage_path, storage_zone_name, pull_zone_name=None, pull_zone_url=None):
    """
    Public URL of a stored file.

    Priority: pull zone name, then the pull zone URL, then the storage zone
    name (which only resolves when a pull zone of the same name exists).
    """
    if pull_zone_name:
        return f"https://{pull_zone_name}.b-cdn.net/{storage_path}"

    if pull_zone_url:
        base = pull_zone_url.strip().rstrip('/')
        base = re.sub(r'^https?://', '', base)
        match = _PULL_ZONE_RE.match(base)
        if match:
            return f"https://{match.group(1)}.b-cdn.net/{storage_path}"
        return f"https://{base}/{storage_path}"

    return f"https://{storage_zone_name}.b-cdn.net/{storage_path}"


def normalize_folder(folder):
    """Trim slashes, turn whitespace into hyphens, fall back to the default."""
    folder = (folder or '').strip().strip('/')
    folder = re.sub(r'\s+', '-', folder)
    return folder or DEFAULT_FOLDER


def _error_message(response):
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        return data.get('Message') or data.get('message') or str(data)
    return str(data)


def upload_to_bunny_storage(file_path, remote_path):
    """
    Upload a file to Bunny Storage.

    Args:
        file_path: Local path to the file
        remote_path: Path inside the storage zone, e.g. 'videos/clip.mp4'

    Returns:
        dict with cdnUrl, storagePath, fileName and method='storage'
    """
    zone_name = os.getenv('BUNNY_STORAGE_ZONE_NAME')
    zone_password = os.getenv('BUNNY_STORAGE_ZONE_PASSWORD')

    if not zone_name or not zone_password:
        raise BunnyCDNError(
            'Bunny Storage credentials not configured. Please set BUNNY_STORAGE_ZONE_NAME '
            'and BUNNY_STORAGE_ZONE_PASSWORD in .env file'
        )

    normalized_path = remote_path.lstrip('/')
    host = storage_host(os.getenv('BUNNY_STORAGE_ZONE_REGION', ''))
    upload_url = f"https://{host}/{zone_name}/{normalized_path}"

    logger.info(f"Uploading to Bunny Storage: {upload_url}")

    try:
        with open(file_path, 'rb') as f:
            response = requests.put(
                upload_url,
                data=f,
                headers={
                    'AccessKey': zone_password,
                    'Content-Type': 'application/octet-stream'
                },
                timeout=_upload_timeout()
            )
    except requests.RequestException as e:
        logger.error(f"Bunny Storage upload error: {e}")
        raise BunnyCDNError(f"Bunny Storage upload failed (unknown): {e}") from e

    if not response.ok:
        message = _error_message(response)
        logger.error(f"Bunny Storage upload error: {message}")

        if response.status_code == 401:
            raise BunnyCDNError(
                'Bunny Storage authentication failed (401 Unauthorized). Please verify:\n'
                '- BUNNY_STORAGE_ZONE_NAME matches your storage zone name exactly (case-sensitive)\n'
                '- BUNNY_STORAGE_ZONE_PASSWORD is the password from the "FTP & API Access" tab (not the API key)\n'
                '- BUNNY_STORAGE_ZONE_REGION matches the zone\'s primary region '
                '(ny, uk, la, sg, se, br, jh, syd, or empty for Frankfurt)\n'
                '- There are no extra spaces or quotes in your .env file values'
            )
        if response.status_code == 404:
            raise BunnyCDNError(
                f"Bunny Storage zone not found (404). Please verify BUNNY_STORAGE_ZONE_NAME: {zone_name}"
            )
        raise BunnyCDNError(f"Bunny Storage upload failed ({response.status_code}): {message}")

    url = cdn_url(
        normalized_path,
        zone_name,
        pull_zone_name=os.getenv('BUNNY_PULL_ZONE_NAME'),
        pull_zone_url=os.getenv('BUNNY_PULL_ZONE_URL')
    )
    logger.info(f"✅ Upload successful! CDN URL: {url}")

    return {
        'success': True,
        'cdnUrl': url,
        'storagePath': normalized_path,
        'fileName': os.path.basename(file_path),
        'method': 'storage'
    }


def upload_to_bunny_stream(file_path, video_title=None):
    """
    Upload a video to a Bunny Stream library.

    Creates the video object first, then uploads the bytes into it.
    """
    api_key = os.getenv('BUNNY_STREAM_API_KEY')
    library_id = os.getenv('BUNNY_STREAM_LIBRARY_ID')

    if not api_key or not library_id:
        raise BunnyCDNError(
            'Bunny Stream credentials not configured. Please set BUNNY_STREAM_API_KEY '
            'and BUNNY_STREAM_LIBRARY_ID in .env file'
        )

    file_name = os.path.basename(file_path)
    title = video_title or os.path.splitext(file_name)[0]

    logger.info(f"Uploading to Bunny Stream: {title}")

    videos_url = f"{STREAM_API_BASE}/library/{library_id}/videos"
    try:
        create_response = requests.post(
            videos_url,
            json={'title': title},
            headers={
                'AccessKey': api_key,
                'Accept': 'application/json'
            },
            timeout=30
        )
        create_response.raise_for_status()
        video_id = create_response.json()['guid']
        logger.info(f"Video object created with ID: {video_id}")

        with open(file_path, 'rb') as f:
            upload_response = requests.put(
                f"{videos_url}/{video_id}",
                data=f,
                headers={
                    'AccessKey': api_key,
                    'Accept': 'application/json'
                },
                timeout=_upload_timeout()
            )
        upload_response.raise_for_status()
    except requests.HTTPError as e:
        message = _error_message(e.response)
        logger.error(f"Bunny Stream upload error: {message}")
        raise BunnyCDNError(f"Bunny Stream upload failed: {message}") from e
    except (requests.RequestException, KeyError, ValueError) as e:
        logger.error(f"Bunny Stream upload error: {e}")
        raise BunnyCDNError(f"Bunny Stream upload failed: {e}") from e

    # Delivery renditions appear once Bunny finishes encoding
    video_url = f"https://vz-{library_id}.b-cdn.net/{video_id}/play_720p.mp4"
    logger.info(f"✅ Upload successful! Video ID: {video_id}")

    return {
        'success': True,
        'videoId': video_id,
        'videoUrl': video_url,
        'title': title,
        'fileName': file_name,
        'method': 'stream'
    }


def upload_compressed_video(file_path, original_name=None, folder=DEFAULT_FOLDER):
    """
    Upload a compressed video, preferring Storage over Stream.

    Args:
        file_path: Local path to the compressed video
        original_name: Name used to derive the remote file name
        folder: Folder inside the storage zone

    Returns:
        Result dict from upload_to_bunny_storage or upload_to_bunny_stream
    """
    # client supplied names may carry directories, including Windows ones
    file_name = os.path.basename((original_name or '').replace('\\', '/')) or os.path.basename(file_path)
    base_name = os.path.splitext(file_name)[0] or 'video'
    timestamp = int(time.time() * 1000)
    remote_path = f"{normalize_folder(folder)}/{base_name}_{timestamp}.mp4"

    if has_storage_credentials():
        return upload_to_bunny_storage(file_path, remote_path)
    if has_stream_credentials():
        return upload_to_bunny_stream(file_path, base_name)

    raise BunnyCDNError(
        'No Bunny CDN credentials configured. Please set up either Bunny Storage '
        'or Bunny Stream in .env file'
    )
