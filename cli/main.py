#!/usr/bin/env python3
"""
propstream CLI - upload property videos, watch their publish status, and run
maintenance against the database.
"""

import argparse
import asyncio
import logging
import os
import sys
import time
from pathlib import Path

import httpx
from rich.console import Console
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from api.errors import truncate_error
from config import (
    ERROR_DETAIL_MAX_LENGTH,
    LOG_LEVEL,
    MAX_UPLOAD_SIZE,
    PORT,
    STALE_QUEUED_AFTER,
    SUPPORTED_VIDEO_EXTENSIONS,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("PROPSTREAM_API_TIMEOUT", "30"))

# Upload timeout in seconds (default 2 hours)
UPLOAD_TIMEOUT = int(os.getenv("PROPSTREAM_UPLOAD_TIMEOUT", "7200"))

# Seconds between status polls with --wait
POLL_INTERVAL = float(os.getenv("PROPSTREAM_POLL_INTERVAL", "5"))

_default_api_url = f"http://localhost:{PORT}"
API_BASE = os.getenv("PROPSTREAM_API_URL", _default_api_url).rstrip("/") + "/api"

TERMINAL_STATUSES = ("completed", "failed", "error")

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


class ProgressFileWrapper:
    """Wrapper for file objects that reports upload progress."""

    def __init__(self, file, progress, task_id):
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def seek(self, *args, **kwargs):
        return self.file.seek(*args, **kwargs)

    def tell(self):
        return self.file.tell()

    def close(self):
        """The underlying file is managed by the caller."""

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass


def safe_json_response(response, default_error="Request failed"):
    """
    Parse a JSON response, turning HTTP and decoding errors into CLIError.
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, 200)}")


def validate_video_file(file_path: Path) -> int:
    """
    Check the file exists, is a supported video and fits the upload limit.

    Returns:
        File size in bytes
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")
    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    if file_path.suffix.lower() not in SUPPORTED_VIDEO_EXTENSIONS:
        raise CLIError(
            f"Unsupported video type '{file_path.suffix}'. Allowed: {', '.join(sorted(SUPPORTED_VIDEO_EXTENSIONS))}"
        )

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")
    if file_size > MAX_UPLOAD_SIZE:
        max_size_gb = MAX_UPLOAD_SIZE / (1024 * 1024 * 1024)
        raise CLIError(f"File too large ({file_size / (1024 ** 3):.2f} GB). Maximum upload size is {max_size_gb:.0f} GB")

    return file_size


def fetch_video_status(client: httpx.Client, property_id: str) -> dict:
    response = client.get(f"{API_BASE}/properties/{property_id}/video/status")
    return safe_json_response(response)


def print_video(status: dict) -> None:
    video = status.get("video")
    if not video:
        console.print(f"Property {status['property_id']} has no video")
        return

    table = Table(show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    table.add_row("Property", status["property_id"])
    table.add_row("Slot", str(video["id"]))
    table.add_row("Status", video["status"])
    table.add_row("File", video.get("original_name") or "-")
    if video.get("master_key"):
        table.add_row("Master", video["master_key"])
    for quality, key in (video.get("quality_keys") or {}).items():
        table.add_row(quality, key)
    if video.get("thumbnail_key"):
        table.add_row("Thumbnail", video["thumbnail_key"])
    if video.get("error_message"):
        table.add_row("Error", f"[red]{video['error_message']}[/red]")
    console.print(table)


def wait_for_terminal(client: httpx.Client, property_id: str, video_id: int) -> dict:
    """Poll until the slot created by this upload leaves `queued`."""
    with console.status("Waiting for the video to be published..."):
        while True:
            status = fetch_video_status(client, property_id)
            video = status.get("video")
            if video is None or video["id"] != video_id:
                raise CLIError("The video slot was replaced or removed while waiting")
            if video["status"] in TERMINAL_STATUSES:
                return status
            time.sleep(POLL_INTERVAL)


def cmd_create_property(args):
    """Create a property record."""
    try:
        payload = {"title": args.title, "description": args.description or ""}
        if args.price is not None:
            payload["price"] = args.price
        response = httpx.post(f"{API_BASE}/properties", json=payload, timeout=DEFAULT_API_TIMEOUT)
        result = safe_json_response(response)
        console.print(f"Created property [bold]{result['id']}[/bold]")
    except httpx.ConnectError:
        console.print(f"[red]Error:[/red] Could not connect to API at {API_BASE}")
        sys.exit(1)
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def cmd_upload_video(args):
    """Upload a video for a property."""
    try:
        file_path = Path(args.file)
        file_size = validate_video_file(file_path)

        console.print(f"Uploading: {file_path.name} -> property {args.property_id}")

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            FileSizeColumn(),
            TextColumn("/"),
            TotalFileSizeColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console,
        ) as progress:
            task_id = progress.add_task("Uploading...", total=file_size)
            with open(file_path, "rb") as f:
                wrapped_file = ProgressFileWrapper(f, progress, task_id)
                files = {"video": (file_path.name, wrapped_file)}
                with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                    response = client.post(f"{API_BASE}/properties/{args.property_id}/video", files=files)

        result = safe_json_response(response)
        console.print(f"Video queued for processing (slot {result['video_id']})")

        if args.wait:
            with httpx.Client(timeout=DEFAULT_API_TIMEOUT) as client:
                status = wait_for_terminal(client, args.property_id, result["video_id"])
            print_video(status)
            if status["video"]["status"] != "completed":
                sys.exit(1)

    except httpx.ConnectError:
        console.print(f"[red]Error:[/red] Could not connect to API at {API_BASE}")
        console.print("Make sure the server is running (propstream serve).")
        sys.exit(1)
    except httpx.TimeoutException:
        console.print(f"[red]Error:[/red] Upload timed out (exceeded {UPLOAD_TIMEOUT}s timeout)")
        sys.exit(1)
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def cmd_status(args):
    """Show the video slot of a property."""
    try:
        with httpx.Client(timeout=DEFAULT_API_TIMEOUT) as client:
            status = fetch_video_status(client, args.property_id)
        print_video(status)
    except httpx.ConnectError:
        console.print(f"[red]Error:[/red] Could not connect to API at {API_BASE}")
        sys.exit(1)
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def cmd_reset_stale(args):
    """Mark video slots stuck in `queued` as interrupted."""
    from api.database import configure_database, create_database
    from api.property_store import PropertyStore

    async def do_reset():
        database = create_database()
        await database.connect()
        await configure_database(database)
        try:
            return await PropertyStore(database).reset_stale_queued(args.older_than)
        finally:
            await database.disconnect()

    reset = asyncio.run(do_reset())
    if reset:
        console.print(f"Reset {reset} stale video slot(s) to error")
    else:
        console.print("No stale video slots found")


def cmd_serve(args):
    """Run the API server."""
    from api.app import main as serve

    serve()


def main():
    parser = argparse.ArgumentParser(prog="propstream", description="propstream CLI - property media pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create-property", help="Create a property record")
    create_parser.add_argument("title", help="Property title")
    create_parser.add_argument("-d", "--description", help="Property description")
    create_parser.add_argument("-p", "--price", type=float, help="Asking price")
    create_parser.set_defaults(func=cmd_create_property)

    upload_parser = subparsers.add_parser("upload-video", help="Upload a video for a property")
    upload_parser.add_argument("property_id", help="Property ID")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.add_argument("-w", "--wait", action="store_true", help="Wait until publishing finishes")
    upload_parser.set_defaults(func=cmd_upload_video)

    status_parser = subparsers.add_parser("status", help="Show a property's video status")
    status_parser.add_argument("property_id", help="Property ID")
    status_parser.set_defaults(func=cmd_status)

    reset_parser = subparsers.add_parser("reset-stale", help="Mark interrupted video uploads as error")
    reset_parser.add_argument(
        "--older-than",
        type=positive_int,
        default=STALE_QUEUED_AFTER,
        metavar="SECONDS",
        help=f"Only slots queued longer than this (default: {STALE_QUEUED_AFTER})",
    )
    reset_parser.set_defaults(func=cmd_reset_stale)

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
