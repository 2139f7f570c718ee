"""
Pytest fixtures for propstream tests.

Provides a per-test SQLite database, an in-memory stand-in for the S3 client,
an ffmpeg double that writes plausible output files, and an API test client.
"""

import io
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from botocore.exceptions import ClientError
from databases import Database

# Must be set BEFORE importing config so no real storage directories are created
os.environ["PROPSTREAM_TEST_MODE"] = "1"

from api.database import configure_database, create_tables  # noqa: E402
from api.property_store import PropertyStore  # noqa: E402
from api.schemas import PropertyCreate  # noqa: E402
from api.storage import ObjectStore  # noqa: E402
from api.upload_queue import UploadQueue  # noqa: E402
from worker.transcoder import TranscodeError  # noqa: E402

TEST_BUCKET = "propstream-test"


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} (injected)"}}, operation)


class FakeS3Client:
    """
    Dict-backed subset of the boto3 S3 client used by ObjectStore.

    fail_put / fail_delete are predicates on the key; when they return True the
    call raises a botocore ClientError like a real outage would.
    """

    def __init__(self, page_size: int = 1000):
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self.page_size = page_size
        self.fail_put: Optional[Callable[[str], bool]] = None
        self.fail_delete: Optional[Callable[[str], bool]] = None
        self.put_calls: List[str] = []
        self.list_calls = 0
        self.delete_objects_calls = 0
        self.presign_calls = 0

    def _check_put(self, key: str) -> None:
        self.put_calls.append(key)
        if self.fail_put and self.fail_put(key):
            raise _client_error("InternalError", "PutObject")

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        self._check_put(key)
        content_type = (ExtraArgs or {}).get("ContentType", "binary/octet-stream")
        self.objects[key] = (fileobj.read(), content_type)

    def put_object(self, Bucket, Key, Body, ContentType="binary/octet-stream"):
        self._check_put(Key)
        self.objects[Key] = (bytes(Body), ContentType)
        return {}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        data, content_type = self.objects[Key]
        return {"Body": io.BytesIO(data), "ContentType": content_type, "ContentLength": len(data)}

    def delete_object(self, Bucket, Key):
        if self.fail_delete and self.fail_delete(Key):
            raise _client_error("InternalError", "DeleteObject")
        # S3 reports success for keys that do not exist
        self.objects.pop(Key, None)
        return {}

    def delete_objects(self, Bucket, Delete):
        self.delete_objects_calls += 1
        errors = []
        for entry in Delete["Objects"]:
            key = entry["Key"]
            if self.fail_delete and self.fail_delete(key):
                errors.append({"Key": key, "Code": "InternalError", "Message": "injected"})
                continue
            self.objects.pop(key, None)
        return {"Errors": errors} if errors else {}

    def list_objects_v2(self, Bucket, Prefix="", ContinuationToken=None):
        self.list_calls += 1
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        start = int(ContinuationToken) if ContinuationToken else 0
        page = keys[start : start + self.page_size]
        resp = {"Contents": [{"Key": k} for k in page], "KeyCount": len(page)}
        if start + self.page_size < len(keys):
            resp["IsTruncated"] = True
            resp["NextContinuationToken"] = str(start + self.page_size)
        else:
            resp["IsTruncated"] = False
        return resp

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self.presign_calls += 1
        return (
            f"https://storage.example.test/{Params['Bucket']}/{Params['Key']}"
            f"?X-Amz-Expires={ExpiresIn}&X-Amz-Signature=sig{self.presign_calls}"
        )

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))


class FakeFFmpeg:
    """
    Replacement for worker.transcoder.run_ffmpeg.

    HLS commands get playlists and segments written for every rung, remux and
    re-encode commands get a small MP4 and thumbnail commands a JPEG. Contexts
    listed in fail_contexts raise TranscodeError the way a failed ffmpeg does.
    """

    def __init__(self, segments_per_rung: int = 3):
        self.segments_per_rung = segments_per_rung
        self.fail_contexts = set()
        self.calls: List[Tuple[List[str], str]] = []
        # Duration reported by the patched probe_duration
        self.duration = 90.0
        self.probed: List[Path] = []

    async def __call__(self, cmd: List[str], timeout: float, context: str = "FFmpeg") -> None:
        self.calls.append((list(cmd), context))
        if context in self.fail_contexts:
            raise TranscodeError(f"{context} exited with code 1: Invalid data found when processing input")

        if "-hls_segment_filename" in cmd:
            hls_time = cmd[cmd.index("-hls_time") + 1]
            for i, arg in enumerate(cmd):
                if arg != "-hls_segment_filename":
                    continue
                pattern, playlist = cmd[i + 1], Path(cmd[i + 2])
                lines = ["#EXTM3U", "#EXT-X-VERSION:3", f"#EXT-X-TARGETDURATION:{hls_time}"]
                for seq in range(self.segments_per_rung):
                    segment = Path(pattern % seq)
                    segment.write_bytes(b"\x47" * 188)
                    lines.extend([f"#EXTINF:{hls_time}.0,", segment.name])
                lines.append("#EXT-X-ENDLIST")
                playlist.write_text("\n".join(lines) + "\n")
        elif "-vframes" in cmd:
            Path(cmd[-1]).write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
        else:
            Path(cmd[-1]).write_bytes(b"fake-mp4-data")

    def contexts(self) -> List[str]:
        return [context for _, context in self.calls]

    def hls_time(self) -> Optional[int]:
        for cmd, _ in self.calls:
            if "-hls_time" in cmd:
                return int(cmd[cmd.index("-hls_time") + 1])
        return None


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def object_store(fake_s3) -> ObjectStore:
    return ObjectStore(fake_s3, TEST_BUCKET)


@pytest.fixture
def storage_dirs(tmp_path) -> Dict[str, Path]:
    """Uploads and scratch directories for one test."""
    dirs = {"uploads": tmp_path / "uploads", "scratch": tmp_path / "scratch"}
    for path in dirs.values():
        path.mkdir()
    return dirs


@pytest.fixture
def fake_ffmpeg(monkeypatch):
    """Patch the ffmpeg/ffprobe entry points; the probed duration is settable via .duration."""
    fake = FakeFFmpeg()

    async def fake_probe(input_path, timeout=None):
        fake.probed.append(Path(input_path))
        if "ffprobe" in fake.fail_contexts:
            raise TranscodeError("ffprobe failed: moov atom not found")
        return fake.duration

    monkeypatch.setattr("worker.transcoder.run_ffmpeg", fake)
    monkeypatch.setattr("worker.transcoder.probe_duration", fake_probe)
    return fake


@pytest.fixture
def make_source(storage_dirs):
    """Write a fake uploaded video into the uploads directory and return its path."""

    def _make(name: str = "walkthrough.mp4", data: bytes = b"source-video-bytes") -> Path:
        path = storage_dirs["uploads"] / name
        path.write_bytes(data)
        return path

    return _make


@pytest.fixture
def test_db_url(tmp_path) -> str:
    url = f"sqlite:///{tmp_path / 'propstream-test.db'}"
    create_tables(url)
    return url


@pytest.fixture
async def test_database(test_db_url):
    database = Database(test_db_url)
    await database.connect()
    await configure_database(database)
    yield database
    await database.disconnect()


@pytest.fixture
def property_store(test_database) -> PropertyStore:
    return PropertyStore(test_database)


@pytest.fixture
async def sample_property(property_store) -> str:
    return await property_store.create_property(
        PropertyCreate(title="Harbour View Loft", description="Two bedrooms over the marina", price=450000)
    )


@pytest.fixture
def app(test_db_url, object_store, storage_dirs, fake_ffmpeg):
    from api.app import create_app

    return create_app(
        database=Database(test_db_url),
        object_store=object_store,
        upload_queue=UploadQueue(2),
        scratch_dir=storage_dirs["scratch"],
        uploads_dir=storage_dirs["uploads"],
        reset_stale_on_startup=False,
    )


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def wait_for_jobs(client):
    """Block until every queued publish job in the app has finished."""

    def _wait():
        client.portal.call(client.app.state.upload_queue.join)

    return _wait
