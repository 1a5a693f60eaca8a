#!/usr/bin/env python3
"""
Video Compression Helpers

Builds and runs the ffmpeg H.264/AAC transcode used by the API server, and
doubles as a batch compressor for a directory of videos.

Usage:
    python compress_videos.py                           # Balanced compression
    python compress_videos.py --quality high            # High quality
    python compress_videos.py --quality maximum         # Maximum compression
    python compress_videos.py --crf 26 --resolution 720 --preset slow
    python compress_videos.py --input my_videos --output compressed
"""

import os
import math
import re
import subprocess
import sys
import tempfile
import logging
from pathlib import Path
import argparse

logger = logging.getLogger(__name__)

FFMPEG_PATH = os.getenv('FFMPEG_PATH', 'ffmpeg')
FFPROBE_PATH = os.getenv('FFPROBE_PATH', 'ffprobe')

DEFAULT_QUALITY = 23
MIN_QUALITY = 18
MAX_QUALITY = 28
PRESETS = ('fast', 'medium', 'slow')
AUDIO_BITRATE = '128k'

# Named profiles for the command line
QUALITY_PROFILES = {
    'high': {
        'crf': 18,
        'resolution': 'original',
        'description': 'High quality (CRF 18, original resolution)'
    },
    'balanced': {
        'crf': 23,
        'resolution': 'original',
        'description': 'Balanced (CRF 23, original resolution)'
    },
    'maximum': {
        'crf': 28,
        'resolution': '720',
        'description': 'Maximum compression (CRF 28, 720p)'
    }
}

_LEADING_INT_RE = re.compile(r'^\s*([+-]?\d+)')


class CompressionError(Exception):
    """Raised when ffmpeg fails to produce an output file."""


class CompressionCancelled(CompressionError):
    """Raised when a running compression was cancelled."""


class InvalidSettingsError(ValueError):
    """Raised for out-of-range compression parameters."""


class ProbeError(Exception):
    """Raised when ffprobe cannot read a file's duration."""


class CompressionSettings:
    """Validated encoder parameters."""

    def __init__(self, quality=DEFAULT_QUALITY, resolution='original', preset='medium',
                 audio_bitrate=AUDIO_BITRATE):
        self.quality = quality
        self.resolution = resolution
        self.preset = preset
        self.audio_bitrate = audio_bitrate

    @property
    def height(self):
        if self.resolution == 'original':
            return None
        return int(self.resolution)

    def __repr__(self):
        return (f"CompressionSettings(quality={self.quality}, resolution={self.resolution!r}, "
                f"preset={self.preset!r})")


class CompressionResult:
    """Outcome of a finished compression."""

    def __init__(self, input_path, output_path, input_size, output_size):
        self.input_path = input_path
        self.output_path = output_path
        self.input_size = input_size
        self.output_size = output_size

    @property
    def savings(self):
        if not self.input_size:
            return 0.0
        return round((self.input_size - self.output_size) / self.input_size * 100, 1)

    @property
    def savings_formatted(self):
        return f"{self.savings:.1f}%"


def check_ffmpeg(ffmpeg_path=None):
    """Check if ffmpeg is installed."""
    try:
        subprocess.run([ffmpeg_path or FFMPEG_PATH, '-version'], capture_output=True, check=True)
        return True
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False


def probe_duration(path, ffprobe_path=None):
    """
    Read a video's duration with ffprobe.

    Args:
        path: Path to the video file
        ffprobe_path: ffprobe executable (defaults to FFPROBE_PATH)

    Returns:
        Duration in seconds as a float

    Raises:
        ProbeError: ffprobe is missing, failed, or printed no duration
    """
    cmd = [
        ffprobe_path or FFPROBE_PATH,
        '-v', 'error',
        '-show_entries', 'format=duration',
        '-of', 'default=noprint_wrappers=1:nokey=1',
        str(path)
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=60)
    except FileNotFoundError as e:
        raise ProbeError(f"ffprobe not found: {e}") from e
    except subprocess.TimeoutExpired as e:
        raise ProbeError('ffprobe timed out') from e
    except subprocess.CalledProcessError as e:
        raise ProbeError((e.stderr or '').strip() or f"ffprobe exited with {e.returncode}") from e

    output = result.stdout.strip()
    try:
        return float(output)
    except ValueError as e:
        raise ProbeError(f"No duration in ffprobe output: {output!r}") from e


def parse_quality(value, default=DEFAULT_QUALITY):
    """
    Parse a CRF value the way form fields arrive.

    Leading digits win ("20.5" -> 20). Missing, non-numeric and zero values
    fall back to the default.
    """
    if value is None or isinstance(value, bool):
        return default

    if isinstance(value, float) and not math.isfinite(value):
        return default
    if isinstance(value, (int, float)):
        parsed = int(value)
    else:
        match = _LEADING_INT_RE.match(str(value))
        if not match:
            return default
        parsed = int(match.group(1))

    return parsed or default


def validate_settings(quality=DEFAULT_QUALITY, resolution='original', preset='medium'):
    """Validate raw parameters and return CompressionSettings."""
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise InvalidSettingsError(f'Quality (CRF) must be between {MIN_QUALITY} and {MAX_QUALITY}')

    if preset not in PRESETS:
        raise InvalidSettingsError('Preset must be fast, medium, or slow')

    resolution = str(resolution).strip().lower() if resolution else 'original'
    if resolution.endswith('p'):
        resolution = resolution[:-1]
    if resolution != 'original':
        if not re.fullmatch(r'[0-9]+', resolution) or int(resolution) <= 0:
            raise InvalidSettingsError(
                'Resolution must be original or a target height such as 1080 or 720'
            )
        resolution = str(int(resolution))

    return CompressionSettings(quality=quality, resolution=resolution, preset=preset)


def build_ffmpeg_command(input_path, output_path, settings, progress=False, ffmpeg_path=None):
    """Assemble the ffmpeg argv for one compression."""
    cmd = [
        ffmpeg_path or FFMPEG_PATH,
        '-y',                           # Overwrite output
        '-i', str(input_path),
        '-c:v', 'libx264',
        '-crf', str(settings.quality),
        '-preset', settings.preset,
        '-movflags', '+faststart'
    ]

    if settings.height:
        # -2 keeps the aspect ratio with an even width
        cmd.extend(['-vf', f'scale=-2:{settings.height}'])

    cmd.extend([
        '-c:a', 'aac',
        '-b:a', settings.audio_bitrate,
        '-threads', '0'
    ])

    if progress:
        cmd.extend(['-progress', 'pipe:1', '-nostats'])

    cmd.append(str(output_path))
    return cmd


def _parse_timestamp(value):
    hours, minutes, seconds = value.split(':')
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_progress(line, duration):
    """
    Turn one line of ``-progress`` output into a percentage.

    Returns:
        (percent, seconds) or None when the line carries no position
    """
    if not duration or duration <= 0 or '=' not in line:
        return None

    key, _, value = line.strip().partition('=')
    try:
        if key in ('out_time_us', 'out_time_ms'):
            # ffmpeg reports out_time_ms in microseconds as well
            seconds = int(value) / 1_000_000
        elif key == 'out_time':
            seconds = _parse_timestamp(value)
        else:
            return None
    except ValueError:
        return None

    if seconds < 0:
        return None

    percent = max(0, min(100, round(seconds / duration * 100)))
    return percent, seconds


def _stderr_tail(stderr_file, limit=500):
    stderr_file.seek(0)
    text = stderr_file.read().decode('utf-8', errors='replace').strip()
    return text[-limit:]


def compress_video(input_path, output_path, settings, duration=None, on_progress=None,
                   cancel_event=None, ffmpeg_path=None):
    """
    Compress a video with ffmpeg.

    Args:
        input_path: Path to input video
        output_path: Path to output video
        settings: CompressionSettings
        duration: Input duration in seconds, needed for progress percentages
        on_progress: Callable(percent, seconds) invoked as encoding advances
        cancel_event: threading.Event; when set the encoder is terminated
        ffmpeg_path: ffmpeg executable (defaults to FFMPEG_PATH)

    Returns:
        CompressionResult

    Raises:
        CompressionCancelled: cancel_event was set
        CompressionError: ffmpeg failed or is missing
    """
    cmd = build_ffmpeg_command(input_path, output_path, settings, progress=True,
                               ffmpeg_path=ffmpeg_path)
    logger.info(f"FFmpeg command: {' '.join(cmd)}")

    input_size = os.path.getsize(input_path)
    last_percent = None

    # stderr goes to a file so a chatty encoder cannot fill the pipe
    with tempfile.TemporaryFile() as stderr_file:
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=stderr_file,
                stdin=subprocess.DEVNULL,
                text=True
            )
        except FileNotFoundError as e:
            raise CompressionError(f"ffmpeg not found: {e}") from e

        try:
            for line in process.stdout:
                if cancel_event is not None and cancel_event.is_set():
                    break

                parsed = parse_progress(line, duration)
                if parsed is None:
                    continue

                percent, seconds = parsed
                if percent != last_percent:
                    last_percent = percent
                    logger.debug(f"Processing: {percent}% complete")
                    if on_progress:
                        on_progress(percent, seconds)
        finally:
            if cancel_event is not None and cancel_event.is_set() and process.poll() is None:
                process.terminate()
            returncode = process.wait()
            process.stdout.close()

        if cancel_event is not None and cancel_event.is_set():
            _remove_partial(output_path)
            raise CompressionCancelled('Compression cancelled')

        if returncode != 0:
            _remove_partial(output_path)
            details = _stderr_tail(stderr_file)
            raise CompressionError(details or f"ffmpeg exited with code {returncode}")

    if not os.path.exists(output_path):
        raise CompressionError('ffmpeg finished without writing an output file')

    if on_progress and last_percent != 100:
        on_progress(100, duration or 0)

    output_size = os.path.getsize(output_path)
    return CompressionResult(input_path, output_path, input_size, output_size)


def _remove_partial(path):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove partial output {path}: {e}")


def compressed_name(name):
    """video.mov -> video_compressed.mp4"""
    stem = os.path.splitext(os.path.basename(name))[0] or 'video'
    return f"{stem}_compressed.mp4"


def format_size(num_bytes):
    """Human-readable size, base 1024, at most two decimals."""
    if not num_bytes or num_bytes <= 0:
        return '0 B'

    units = ['B', 'KB', 'MB', 'GB']
    value = float(num_bytes)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1

    # half-up rounding; round() would use banker's rounding
    value = int(value * 100 + 0.5) / 100
    text = f"{value:.2f}".rstrip('0').rstrip('.')
    return f"{text} {units[index]}"


def compress_directory(input_dir='videos', output_dir='videos_compressed', quality='balanced',
                       crf=None, resolution=None, preset='medium'):
    """
    Compress all videos in a directory.

    Args:
        input_dir: Input directory path
        output_dir: Output directory path
        quality: Name of a QUALITY_PROFILES entry
        crf: CRF override
        resolution: Resolution override ('original' or a height)
        preset: Encoding preset

    Returns:
        Tuple of (success_count, failed_count)
    """

    input_path = Path(input_dir)
    output_path = Path(output_dir)

    if not input_path.exists():
        print(f"❌ Error: Input directory '{input_dir}' does not exist")
        return 0, 0

    profile = QUALITY_PROFILES.get(quality, QUALITY_PROFILES['balanced'])
    try:
        settings = validate_settings(
            crf if crf is not None else profile['crf'],
            resolution or profile['resolution'],
            preset
        )
    except InvalidSettingsError as e:
        print(f"❌ Error: {e}")
        return 0, 0

    output_path.mkdir(parents=True, exist_ok=True)

    video_extensions = ['.mp4', '.avi', '.mov', '.mkv', '.mpeg', '.mpg']
    videos = sorted(p for p in input_path.iterdir() if p.suffix.lower() in video_extensions)

    if not videos:
        print(f"❌ No videos found in '{input_dir}'")
        print(f"   Looking for: {', '.join(video_extensions)}")
        return 0, 0

    print("=" * 60)
    print("Video Compression")
    print("=" * 60)
    print(f"📁 Input:  {input_dir}")
    print(f"📁 Output: {output_dir}")
    print(f"🎯 Quality: {profile['description']}")
    print(f"⚙️  Settings: CRF {settings.quality}, Resolution {settings.resolution}, Preset {settings.preset}")
    print(f"📹 Videos: {len(videos)}")
    print("=" * 60)
    print()

    success_count = 0
    failed_count = 0

    for i, video in enumerate(videos, 1):
        print(f"[{i}/{len(videos)}] 📹 Compressing: {video.name}")
        output_file = output_path / compressed_name(video.name)

        try:
            duration = None
            try:
                duration = probe_duration(video)
            except ProbeError as e:
                logger.debug(f"No duration for {video.name}: {e}")

            def report(percent, seconds):
                print(f"\r   ⏳ {percent:3d}%", end='', flush=True)

            result = compress_video(video, output_file, settings, duration=duration, on_progress=report)
            print()
            print(f"   ✅ Original:    {format_size(result.input_size)}")
            print(f"   ✅ Compressed:  {format_size(result.output_size)}")
            print(f"   ✅ Reduction:   {result.savings_formatted}")
            print()
            success_count += 1
        except CompressionError as e:
            print()
            print(f"   ❌ Error: {str(e)[:200]}")
            print()
            failed_count += 1

    print("=" * 60)
    print("Summary")
    print("=" * 60)
    print(f"✅ Successful: {success_count}")
    print(f"❌ Failed:     {failed_count}")
    print(f"📊 Total:      {len(videos)}")
    print("=" * 60)

    return success_count, failed_count


def main(argv=None):
    """Main entry point."""

    parser = argparse.ArgumentParser(
        description='Compress videos with ffmpeg (H.264/AAC, web-optimized MP4)',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python compress_videos.py                           # Balanced compression
  python compress_videos.py --quality high            # High quality
  python compress_videos.py --quality maximum         # Maximum compression
  python compress_videos.py --input my_videos --output compressed

Quality levels:
  high     - CRF 18, original resolution
  balanced - CRF 23, original resolution [DEFAULT]
  maximum  - CRF 28, scaled to 720p
        """
    )

    parser.add_argument(
        '--input',
        default='videos',
        help='Input directory (default: videos)'
    )

    parser.add_argument(
        '--output',
        default='videos_compressed',
        help='Output directory (default: videos_compressed)'
    )

    parser.add_argument(
        '--quality',
        choices=list(QUALITY_PROFILES),
        default='balanced',
        help='Compression profile (default: balanced)'
    )

    parser.add_argument(
        '--crf',
        type=int,
        help=f'CRF override ({MIN_QUALITY}-{MAX_QUALITY})'
    )

    parser.add_argument(
        '--resolution',
        help='Resolution override: original, 1080, 720 ...'
    )

    parser.add_argument(
        '--preset',
        choices=PRESETS,
        default='medium',
        help='Encoding preset (default: medium)'
    )

    args = parser.parse_args(argv)

    if not check_ffmpeg():
        print("❌ Error: ffmpeg is not installed")
        print()
        print("Please install ffmpeg:")
        print("  macOS:   brew install ffmpeg")
        print("  Ubuntu:  sudo apt-get install ffmpeg")
        print("  Windows: Download from https://ffmpeg.org/download.html")
        sys.exit(1)

    success, failed = compress_directory(
        args.input, args.output, args.quality,
        crf=args.crf, resolution=args.resolution, preset=args.preset
    )

    sys.exit(0 if failed == 0 else 1)


if __name__ == '__main__':
    main()
