"""
Shared pytest fixtures for YACU tests.

Fixtures provided:
- test_db: DatabaseManager on a temporary SQLite file
- mock_docker_client: Mock Docker SDK client (low-level API under .api)
- recording_sink / notifications: Notification fan-out capturing every event
- make_image_attrs / make_container_attrs: Docker inspect payload builders
- make_container: ContainerRecord builder

Note: YACU doesn't store containers in the database - they come from the
Docker API on every scan. The database only stores remote image state.
"""

import pytest
import tempfile
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import DatabaseManager
from notifications import NotificationSink, Notifications
from updates.types import ContainerRecord, ImageRecord
from utils.image_reference import parse_image_reference

IMAGE_ID = "sha256:" + "a" * 64
DIGEST = "sha256:" + "c" * 64


@pytest.fixture(scope="function")
def test_db():
    """
    Create a DatabaseManager on a temporary SQLite file.

    The file (and its WAL companions) is removed after the test.
    """
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(db_fd)

    db = DatabaseManager(db_path)
    yield db

    db.close()
    for path in (db_path, db_path + "-wal", db_path + "-shm"):
        if os.path.exists(path):
            os.unlink(path)


@pytest.fixture
def mock_docker_client():
    """
    Mock Docker SDK client for testing without real Docker daemon.

    YACU talks to the low-level APIClient (client.api) for everything but
    image pulls, so only those entry points are stubbed.
    """
    client = MagicMock()
    client.api.containers = MagicMock(return_value=[])
    client.api.stop = MagicMock(return_value=None)
    client.api.start = MagicMock(return_value=None)
    client.api.remove_container = MagicMock(return_value=None)
    client.api.remove_image = MagicMock(return_value=None)
    client.api.connect_container_to_network = MagicMock(return_value=None)
    client.images.pull = MagicMock()
    return client


class RecordingSink(NotificationSink):
    """Notification sink that records every event it receives."""

    def __init__(self):
        self.calls = []
        self.closed = False

    def events(self, name):
        return [args for method, args in self.calls if method == name]

    async def error(self, context, error):
        self.calls.append(("error", (context, error)))

    async def image_updated(self, prev_image, new_image):
        self.calls.append(("image_updated", (prev_image, new_image)))

    async def image_error(self, image, context, error):
        self.calls.append(("image_error", (image, context, error)))

    async def image_removal_failed(self, image, error):
        self.calls.append(("image_removal_failed", (image, error)))

    async def container_updated(self, prev_container, new_container, warnings):
        self.calls.append(("container_updated", (prev_container, new_container, warnings)))

    async def container_error(self, container, context, error):
        self.calls.append(("container_error", (container, context, error)))

    async def close(self):
        self.closed = True


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def notifications(recording_sink):
    """Notifications fan-out with a single recording sink, all kinds enabled."""
    fanout = Notifications()
    fanout.add(recording_sink)
    return fanout


def _timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f") + "123Z"


@pytest.fixture
def make_image_attrs():
    """
    Build an image inspect payload.

    Usage:
        attrs = make_image_attrs(created=datetime(...), repo_digests=["nginx@sha256:..."])
    """
    def _make(image_id=IMAGE_ID, created=None, repo_digests=None, architecture="amd64", variant=None):
        created = created or datetime.now(timezone.utc) - timedelta(days=30)
        attrs = {
            "Id": image_id,
            "Created": _timestamp(created),
            "RepoDigests": list(repo_digests) if repo_digests is not None else [f"nginx@{DIGEST}"],
            "Os": "linux",
            "Architecture": architecture,
        }
        if variant:
            attrs["Variant"] = variant
        return attrs
    return _make


@pytest.fixture
def make_container_attrs():
    """
    Build a container inspect payload as returned by APIClient.inspect_container.
    """
    def _make(container_id="c" * 64, name="web", image="nginx:latest", image_id=IMAGE_ID,
              status="running", labels=None, networks=None, network_mode="bridge"):
        if networks is None:
            networks = {"bridge": {"Aliases": None, "IPAMConfig": None}}
        return {
            "Id": container_id,
            "Name": f"/{name}",
            "Image": image_id,
            "State": {"Status": status, "Running": status == "running"},
            "Config": {
                "Image": image,
                "Labels": dict(labels or {}),
                "Env": ["PATH=/usr/bin"],
            },
            "HostConfig": {"NetworkMode": network_mode, "RestartPolicy": {"Name": "unless-stopped"}},
            "NetworkSettings": {"Networks": networks},
        }
    return _make


@pytest.fixture
def make_container(make_container_attrs, make_image_attrs):
    """
    Build a ContainerRecord without going through the Docker API.

    Usage:
        container = make_container(name="db", labels={"yacu.enable": "true"})
    """
    def _make(image_created=None, repo_digests=None, stop_timeout=30, min_image_age=7,
              architecture="amd64", variant=None, **kwargs):
        attrs = make_container_attrs(**kwargs)
        reference = parse_image_reference(attrs["Config"]["Image"])
        image = ImageRecord.from_inspect(
            make_image_attrs(image_id=attrs["Image"], created=image_created, repo_digests=repo_digests,
                             architecture=architecture, variant=variant),
            reference,
        )
        return ContainerRecord.from_inspect(attrs, image, reference, stop_timeout, min_image_age)
    return _make
