import os
import random
import time
import logging
from datetime import datetime, timezone
from threading import Event, Lock
from urllib.parse import quote, urlparse

import requests
from flask import Flask, Response, request, jsonify, send_from_directory
from flask_cors import CORS
from flask_socketio import SocketIO, emit
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename
from dotenv import load_dotenv

from compress_videos import (
    CompressionCancelled,
    CompressionError,
    InvalidSettingsError,
    ProbeError,
    check_ffmpeg,
    compress_video,
    compressed_name,
    format_size,
    parse_quality,
    probe_duration,
    validate_settings,
)
from bunny_cdn import BunnyCDNError, is_configured as cdn_configured, upload_compressed_video

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VERSION = '1.0.0'

# Configuration
HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', '3001'))
UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', 'uploads')
STATIC_FOLDER = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'public')
MAX_UPLOAD_BYTES = int(os.getenv('MAX_UPLOAD_BYTES', str(int(1.5 * 1024 * 1024 * 1024))))
MAX_DURATION_SECONDS = float(os.getenv('MAX_DURATION_SECONDS', '90'))
DOWNLOAD_TIMEOUT = float(os.getenv('DOWNLOAD_TIMEOUT', '300'))
CDN_REWRITE_FROM = os.getenv('CDN_REWRITE_FROM', '')
CDN_REWRITE_TO = os.getenv('CDN_REWRITE_TO', '')

ALLOWED_VIDEO_MIMES = {'video/mp4', 'video/quicktime', 'video/x-msvideo', 'video/mpeg'}
ALLOWED_VIDEO_EXTENSIONS = {'mp4', 'mov', 'avi', 'mpeg', 'mpg'}

# SSL Configuration
SSL_CERT_PATH = os.getenv('SSL_CERT_PATH', 'cert.pem')
SSL_KEY_PATH = os.getenv('SSL_KEY_PATH', 'key.pem')
USE_SSL = os.getenv('USE_SSL', 'false').lower() == 'true'

# Create necessary directories
os.makedirs(UPLOAD_FOLDER, exist_ok=True)
os.makedirs(STATIC_FOLDER, exist_ok=True)

app = Flask(__name__, static_folder=STATIC_FOLDER, static_url_path='')
app.config['MAX_CONTENT_LENGTH'] = MAX_UPLOAD_BYTES
CORS(app)
socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading')

# Running compressions by Socket.IO session id
active_jobs = {}
jobs_lock = Lock()


class RequestError(Exception):
    """A client error reported as a 400 JSON response."""


def allowed_file(filename, allowed_extensions):
    return '.' in filename and \
           filename.rsplit('.', 1)[1].lower() in allowed_extensions


def allowed_video(file):
    return file.mimetype in ALLOWED_VIDEO_MIMES or \
           allowed_file(file.filename or '', ALLOWED_VIDEO_EXTENSIONS)


def unique_suffix():
    """Millisecond timestamp, pid and a random number; safe for simultaneous uploads."""
    return f"{int(time.time() * 1000)}-{os.getpid()}-{random.randint(0, 10 ** 9)}"


def cleanup(*paths):
    """Remove temp files, logging failures instead of raising."""
    for path in paths:
        if not path or not os.path.exists(path):
            continue
        try:
            os.unlink(path)
            logger.info(f"Cleaned up: {path}")
        except OSError as e:
            logger.warning(f"Failed to cleanup {path}: {e}")


def stream_file(path, cleanup_paths, chunk_size=1024 * 1024):
    """Yield a file in chunks and remove the temp files once the client is done."""
    try:
        with open(path, 'rb') as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk
    finally:
        cleanup(*cleanup_paths)


def attachment_header(filename):
    fallback = secure_filename(filename) or 'compressed.mp4'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


def output_path_for(input_path):
    return os.path.splitext(input_path)[0] + '_compressed.mp4'


def is_truthy_flag(value, default=True):
    """uploadToCdn style flags: anything except False or exactly 'false' counts as true."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return value != 'false'


def request_params():
    """Merge form fields and a JSON body into one dict."""
    params = request.form.to_dict()
    if request.is_json:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            params.update(body)
    return params


def save_upload(file):
    ext = os.path.splitext(secure_filename(file.filename or ''))[1].lower()
    filename = f"video-{unique_suffix()}{ext}"
    filepath = os.path.join(UPLOAD_FOLDER, filename)
    file.save(filepath)
    return filepath


def download_video_from_url(url):
    """
    Download a video into the upload folder.

    Returns:
        (local path, original file name)
    """
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise RequestError('Invalid URL. Only http and https links are supported.')

    filepath = os.path.join(UPLOAD_FOLDER, f"video-url-{unique_suffix()}.mp4")
    original_name = os.path.basename(parsed.path) or 'video.mp4'

    logger.info(f"Downloading video from URL: {url}")

    try:
        with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
            response.raise_for_status()

            content_length = response.headers.get('Content-Length')
            if content_length and content_length.isdigit() and int(content_length) > MAX_UPLOAD_BYTES:
                raise RequestError(f"Remote file is too large. Maximum size is {format_size(MAX_UPLOAD_BYTES)}.")

            written = 0
            with open(filepath, 'wb') as f:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    written += len(chunk)
                    if written > MAX_UPLOAD_BYTES:
                        raise RequestError(
                            f"Remote file is too large. Maximum size is {format_size(MAX_UPLOAD_BYTES)}."
                        )
                    f.write(chunk)
    except requests.RequestException as e:
        cleanup(filepath)
        raise RequestError(f"Failed to download video: {e}") from e
    except RequestError:
        cleanup(filepath)
        raise

    logger.info(f"Download complete: {filepath}")
    return filepath, original_name


def register_job(sid):
    if not sid:
        return None
    cancel_event = Event()
    with jobs_lock:
        active_jobs[sid] = cancel_event
    return cancel_event


def release_job(sid, cancel_event):
    if not sid or cancel_event is None:
        return
    with jobs_lock:
        if active_jobs.get(sid) is cancel_event:
            del active_jobs[sid]


def cancel_job(sid):
    """Signal the running compression of a session; True if there was one."""
    with jobs_lock:
        cancel_event = active_jobs.get(sid)
    if cancel_event is None:
        return False
    cancel_event.set()
    return True


def send_status(sid, job_id, status):
    logger.info(f"[{job_id}] {status}")
    if sid:
        socketio.emit('compression_status', {'job_id': job_id, 'status': status}, to=sid)


def progress_reporter(sid, job_id):
    """Build an on_progress callback that relays encoder progress to one client."""
    def report(percent, seconds):
        if percent % 10 == 0:
            logger.info(f"[{job_id}] Processing: {percent}% complete")
        if sid:
            socketio.emit('compression_progress', {
                'job_id': job_id,
                'percent': percent,
                'time': round(seconds, 2)
            }, to=sid)
    return report


def error_response(message, status=400):
    return jsonify({'success': False, 'error': message}), status


def wants_json(params):
    accept = request.headers.get('Accept', '')
    return 'application/json' in accept or \
        request.args.get('format') == 'json' or \
        params.get('format') == 'json'


def storage_path_for(url):
    if url and CDN_REWRITE_FROM and CDN_REWRITE_TO:
        return url.replace(CDN_REWRITE_FROM, CDN_REWRITE_TO)
    return url


@app.after_request
def add_isolation_headers(response):
    """Cross-origin isolation for the web UI; SharedArrayBuffer needs it."""
    if not request.path.startswith('/api/'):
        response.headers['Cross-Origin-Embedder-Policy'] = 'require-corp'
        response.headers['Cross-Origin-Opener-Policy'] = 'same-origin'
        response.headers['Cross-Origin-Resource-Policy'] = 'cross-origin'
    return response


@app.errorhandler(RequestEntityTooLarge)
def handle_too_large(e):
    return error_response(f"File too large. Maximum size is {format_size(MAX_UPLOAD_BYTES)}.", 413)


@app.route('/')
def index():
    return send_from_directory(STATIC_FOLDER, 'index.html')


@app.route('/api/compress', methods=['POST'])
def compress():
    """Compress an uploaded video or a video from a URL"""
    params = request_params()
    sid = params.get('socketId') or None
    job_id = unique_suffix()
    input_path = None
    output_path = None
    cancel_event = None

    try:
        url = params.get('url')
        if url:
            logger.info(f"[{job_id}] Processing video from URL...")
            send_status(sid, job_id, 'Downloading video...')
            input_path, original_name = download_video_from_url(str(url).strip())
        elif 'video' in request.files and request.files['video'].filename:
            file = request.files['video']
            if not allowed_video(file):
                return error_response('Invalid file type. Only video files are allowed.')
            input_path = save_upload(file)
            original_name = file.filename
        else:
            return error_response('No video file or URL provided')

        try:
            duration = probe_duration(input_path)
        except ProbeError as e:
            logger.error(f"[{job_id}] Error getting video duration: {e}")
            return error_response('Could not read video duration. Please ensure the file is a valid video.')

        if duration > MAX_DURATION_SECONDS:
            return error_response(
                f"Video duration is too long. Maximum duration is {MAX_DURATION_SECONDS / 60:g} minutes "
                f"({round(duration)}s provided)."
            )
        logger.info(f"[{job_id}] Video duration: {round(duration)}s (valid)")

        settings = validate_settings(
            parse_quality(params.get('quality')),
            params.get('resolution') or 'original',
            params.get('preset') or 'medium'
        )

        output_path = output_path_for(input_path)
        logger.info(f"[{job_id}] Compressing: {original_name}")
        logger.info(f"[{job_id}] Settings: CRF {settings.quality}, Resolution {settings.resolution}, "
                    f"Preset {settings.preset}")

        cancel_event = register_job(sid)
        send_status(sid, job_id, 'Compressing video...')
        result = compress_video(
            input_path, output_path, settings,
            duration=duration,
            on_progress=progress_reporter(sid, job_id),
            cancel_event=cancel_event
        )

        logger.info(f"[{job_id}] Compression complete!")
        logger.info(f"[{job_id}] Original: {format_size(result.input_size)}")
        logger.info(f"[{job_id}] Compressed: {format_size(result.output_size)}")
        logger.info(f"[{job_id}] Savings: {result.savings_formatted}")

        cdn_result = None
        if is_truthy_flag(params.get('uploadToCdn')):
            if cdn_configured():
                folder = params.get('cdnFolder') or params.get('folder') or 'compressed-videos'
                send_status(sid, job_id, 'Uploading to CDN...')
                try:
                    logger.info(f"[{job_id}] Uploading compressed video to Bunny CDN in folder: {folder}...")
                    cdn_result = upload_compressed_video(output_path, original_name, folder)
                    logger.info(f"[{job_id}] ✅ Bunny CDN upload successful")
                except BunnyCDNError as e:
                    # The compressed file is still returned
                    logger.error(f"[{job_id}] ⚠️ Bunny CDN upload failed: {e}")
            else:
                logger.info(f"[{job_id}] Bunny CDN not configured, skipping upload")

        response_data = {
            'success': True,
            'originalSize': result.input_size,
            'compressedSize': result.output_size,
            'savings': result.savings_formatted,
            'originalSizeFormatted': format_size(result.input_size),
            'compressedSizeFormatted': format_size(result.output_size),
            'fileName': compressed_name(original_name)
        }

        if cdn_result:
            url = cdn_result.get('cdnUrl') or cdn_result.get('videoUrl')
            response_data['bunnyCdn'] = {
                'cdnUrl': url,
                'storagePath': storage_path_for(url),
                'videoId': cdn_result.get('videoId'),
                'method': cdn_result.get('method')
            }

        send_status(sid, job_id, 'Complete!')

        files = (input_path, output_path)
        if cdn_result or wants_json(params):
            response = jsonify(response_data)
        else:
            response = Response(
                stream_file(output_path, files),
                mimetype='video/mp4',
                headers={
                    'Content-Length': str(result.output_size),
                    'Content-Disposition': attachment_header(response_data['fileName'])
                }
            )

        # removed once the response is closed
        response.call_on_close(lambda: cleanup(*files))
        input_path = output_path = None
        return response

    except (RequestError, InvalidSettingsError) as e:
        return error_response(str(e))
    except CompressionCancelled as e:
        logger.info(f"[{job_id}] Compression cancelled")
        return error_response(str(e))
    except CompressionError as e:
        logger.error(f"[{job_id}] Compression error: {e}")
        return error_response(f"Compression failed: {e}", 500)
    except Exception as e:
        logger.exception(f"[{job_id}] Unexpected error: {e}")
        return error_response(str(e), 500)
    finally:
        release_job(sid, cancel_event)
        cleanup(input_path, output_path)


@app.route('/api/info', methods=['GET'])
def api_info():
    """API information and parameters"""
    return jsonify({
        'success': True,
        'name': 'Video Compressor API',
        'version': VERSION,
        'endpoints': {
            'compress': {
                'method': 'POST',
                'path': '/api/compress',
                'description': 'Compress a video file or video from URL',
                'contentType': 'multipart/form-data or JSON',
                'parameters': {
                    'video': {
                        'type': 'file',
                        'required': False,
                        'description': 'Video file to compress (MP4, MOV, AVI, MPEG) - required if url not provided'
                    },
                    'url': {
                        'type': 'string',
                        'required': False,
                        'description': 'URL to video file (direct link) - required if video not provided'
                    },
                    'quality': {
                        'type': 'number',
                        'required': False,
                        'default': 23,
                        'range': '18-28',
                        'description': 'CRF value (18=high quality, 23=balanced, 28=max compression)'
                    },
                    'resolution': {
                        'type': 'string',
                        'required': False,
                        'default': 'original',
                        'options': ['original', '1080', '720'],
                        'description': 'Target resolution (height in pixels)'
                    },
                    'preset': {
                        'type': 'string',
                        'required': False,
                        'default': 'medium',
                        'options': ['fast', 'medium', 'slow'],
                        'description': 'Encoding speed/quality preset'
                    },
                    'uploadToCdn': {
                        'type': 'boolean',
                        'required': False,
                        'default': True,
                        'description': 'Upload compressed video to Bunny CDN (requires Bunny CDN credentials in .env)'
                    },
                    'cdnFolder': {
                        'type': 'string',
                        'required': False,
                        'default': 'compressed-videos',
                        'description': 'Folder inside the Bunny storage zone'
                    },
                    'format': {
                        'type': 'string',
                        'required': False,
                        'default': 'file',
                        'options': ['file', 'json'],
                        'description': 'Response format: file (download) or json (metadata with CDN URL)'
                    },
                    'socketId': {
                        'type': 'string',
                        'required': False,
                        'description': 'Socket.IO session id that receives compression_progress events'
                    }
                },
                'response': 'Binary video file (MP4) or JSON (if format=json or CDN upload succeeded)',
                'maxFileSize': format_size(MAX_UPLOAD_BYTES),
                'maxDuration': f"{MAX_DURATION_SECONDS:g}s",
                'note': 'Provide either a video file OR a URL, not both. Bunny CDN upload requires credentials in .env file.'
            },
            'info': {
                'method': 'GET',
                'path': '/api/info',
                'description': 'API documentation'
            },
            'health': {
                'method': 'GET',
                'path': '/api/health',
                'description': 'Health check'
            }
        }
    })


@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check"""
    return jsonify({
        'success': True,
        'status': 'healthy',
        'ffmpegAvailable': check_ffmpeg(),
        'cdnConfigured': cdn_configured(),
        'timestamp': datetime.now(timezone.utc).isoformat()
    })


# ============================================================================
# Socket.IO progress channel
# ============================================================================

@socketio.on('connect')
def handle_connect():
    """Handle WebSocket connection"""
    logger.info(f"Client connected: {request.sid}")
    emit('connected', {'session_id': request.sid})


@socketio.on('disconnect')
def handle_disconnect():
    """Cancel the compression of a client that went away"""
    logger.info(f"Client disconnected: {request.sid}")
    if cancel_job(request.sid):
        logger.info(f"[{request.sid}] Cancelled running compression")


@socketio.on('cancel_compression')
def handle_cancel_compression(data=None):
    """Cancel the caller's running compression"""
    session_id = request.sid
    if cancel_job(session_id):
        logger.info(f"[{session_id}] Cancelling compression")
        emit('compression_status', {'status': 'Cancelling...'})
    else:
        logger.warning(f"[{session_id}] No active compression to cancel")
        emit('compression_error', {'error': 'No active compression'})


if __name__ == '__main__':
    print("=" * 60)
    print("🎬 Video Compressor API")
    print("=" * 60)
    print()
    print("📁 Upload directory:", UPLOAD_FOLDER)
    print("🎞️  ffmpeg:", '✅ found' if check_ffmpeg() else '❌ not found')
    print("☁️  Bunny CDN:", '✅ configured' if cdn_configured() else '❌ not configured')

    if USE_SSL and not (os.path.exists(SSL_CERT_PATH) and os.path.exists(SSL_KEY_PATH)):
        print()
        print("⚠️  Warning: SSL certificate files not found, falling back to HTTP")
        print("   Generate a self-signed certificate (testing):")
        print("   openssl req -x509 -newkey rsa:4096 -nodes -out cert.pem -keyout key.pem -days 365")
        USE_SSL = False

    protocol = "https" if USE_SSL else "http"
    print(f"🌐 Web UI: {protocol}://localhost:{PORT}")
    print(f"🚀 API:    {protocol}://localhost:{PORT}/api")
    print("   POST /api/compress - Compress video")
    print("   GET  /api/info     - API documentation")
    print("   GET  /api/health   - Health check")
    print()
    print("=" * 60)
    print()

    debug = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
    ssl_options = {'ssl_context': (SSL_CERT_PATH, SSL_KEY_PATH)} if USE_SSL else {}
    socketio.run(app, host=HOST, port=PORT, debug=debug, allow_unsafe_werkzeug=True, **ssl_options)
