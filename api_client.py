#!/usr/bin/env python3
"""
Video Compressor API client

Sends a video (file or URL) to a running server and saves the result.

Usage:
    python api_client.py path/to/video.mp4
    python api_client.py --url https://example.com/video.mp4
    python api_client.py video.mp4 --quality 26 --resolution 720 --json
"""

import os
import sys
import time
import json
import argparse

import requests

from compress_videos import format_size

DEFAULT_SERVER = 'http://localhost:3001'


def build_form(args):
    form = {
        'quality': str(args.quality),
        'resolution': args.resolution,
        'preset': args.preset,
        'uploadToCdn': 'true' if args.cdn else 'false'
    }
    if args.folder:
        form['cdnFolder'] = args.folder
    if args.url:
        form['url'] = args.url
    if args.json:
        form['format'] = 'json'
    return form


def output_path_for(args):
    if args.output:
        return args.output
    if args.video:
        return os.path.splitext(args.video)[0] + '_compressed_api.mp4'
    return 'compressed_from_url.mp4'


def run(args):
    """Call the API once; returns the process exit code."""
    endpoint = f"{args.server.rstrip('/')}/api/compress"

    print("🎬 Video Compressor API Test")
    print()

    if args.video:
        if not os.path.exists(args.video):
            print(f"❌ Error: Video file not found: {args.video}")
            return 1
        input_size = os.path.getsize(args.video)
        print(f"📂 Input video: {args.video}")
        print(f"📏 File size:   {format_size(input_size)}")
    else:
        input_size = None
        print(f"🔗 Video URL: {args.url}")

    print("🚀 Starting compression...")
    print()

    start_time = time.time()
    try:
        if args.video:
            with open(args.video, 'rb') as f:
                response = requests.post(
                    endpoint,
                    data=build_form(args),
                    files={'video': (os.path.basename(args.video), f, 'video/mp4')},
                    timeout=args.timeout
                )
        else:
            response = requests.post(endpoint, data=build_form(args), timeout=args.timeout)
    except requests.RequestException as e:
        print(f"❌ Error: {e}")
        return 1

    elapsed = time.time() - start_time

    if not response.ok:
        try:
            message = response.json().get('error', response.text)
        except ValueError:
            message = response.text
        print(f"❌ API Error: {response.status_code} - {message}")
        return 1

    if response.headers.get('Content-Type', '').startswith('application/json'):
        print("✅ Compression complete!")
        print()
        print(json.dumps(response.json(), indent=2))
        print(f"   Time: {elapsed:.1f}s")
        return 0

    output_path = output_path_for(args)
    with open(output_path, 'wb') as f:
        f.write(response.content)

    output_size = os.path.getsize(output_path)

    print("✅ Compression complete!")
    print()
    print("📊 Results:")
    if input_size:
        savings = (input_size - output_size) / input_size * 100
        print(f"   Original:   {format_size(input_size)}")
        print(f"   Compressed: {format_size(output_size)}")
        print(f"   Savings:    {savings:.1f}%")
    else:
        print(f"   Compressed: {format_size(output_size)}")
    print(f"   Time:       {elapsed:.1f}s")
    print(f"   Output:     {output_path}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description='Test client for the Video Compressor API')
    parser.add_argument('video', nargs='?', help='Local video file to upload')
    parser.add_argument('--url', help='Video URL to compress instead of a file')
    parser.add_argument('--server', default=DEFAULT_SERVER, help=f'Server base URL (default: {DEFAULT_SERVER})')
    parser.add_argument('--quality', type=int, default=23, help='CRF 18-28 (default: 23)')
    parser.add_argument('--resolution', default='original', help='original, 1080, 720 (default: original)')
    parser.add_argument('--preset', choices=['fast', 'medium', 'slow'], default='medium')
    parser.add_argument('--cdn', action='store_true', help='Upload the result to Bunny CDN')
    parser.add_argument('--folder', help='CDN folder (default: compressed-videos)')
    parser.add_argument('--json', action='store_true', help='Ask for a JSON response')
    parser.add_argument('--output', help='Where to save the compressed video')
    parser.add_argument('--timeout', type=float, default=900, help='Request timeout in seconds')

    args = parser.parse_args(argv)

    if bool(args.video) == bool(args.url):
        parser.error('provide either a video file or --url, not both')

    sys.exit(run(args))


if __name__ == '__main__':
    main()
