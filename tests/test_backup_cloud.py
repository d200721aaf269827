import threading

import pytest
import requests

from backup.cloud import CloudBackupStore, HttpObjectStore, raise_for_status, transfer_timeout
from backup.crypto import SnapshotCipher
from backup.errors import (
    RemoteAuthError,
    RemoteError,
    RemoteNotFound,
    RemoteQuotaError,
    RemoteTransientError,
    SyncCancelled,
)
from backup.naming import AUTO_SLOT_NAME
from backup.types import SnapshotLocation, SnapshotStatus
from backup.verify import read_companion
from conftest import FakeResponse

TOKEN = "token-abc"


@pytest.fixture
def cloud(object_session):
    objects = HttpObjectStore("https://backup.example/api", session=object_session, timeout_s=10)
    return CloudBackupStore(objects, prefix="account-1")


@pytest.fixture
def local_snapshot(make_store, make_manager):
    store = make_store(rows=4)
    return make_manager(store).create_local_backup().snapshot


@pytest.mark.parametrize(
    "status, payload, expected",
    [
        (404, None, RemoteNotFound),
        (401, None, RemoteAuthError),
        (403, None, RemoteAuthError),
        (507, None, RemoteQuotaError),
        (400, {"code": "quota", "message": "account full"}, RemoteQuotaError),
        (429, None, RemoteTransientError),
        (503, None, RemoteTransientError),
        (409, None, RemoteError),
    ],
)
def test_status_codes_map_to_error_classes(status, payload, expected):
    with pytest.raises(expected) as info:
        raise_for_status(FakeResponse(status, payload=payload, reason="nope"), what="probe")
    assert type(info.value) is expected


def test_success_status_passes():
    raise_for_status(FakeResponse(204), what="probe")


def test_transfer_timeout_grows_with_size():
    assert transfer_timeout(0) == 30.0
    assert transfer_timeout(5 * 1024 * 1024, base_s=10) == 15.0


def test_upload_then_list_then_download(cloud, object_session, local_snapshot, tmp_path):
    progress = []

    uploaded = cloud.upload(local_snapshot, TOKEN, progress=progress.append)

    assert uploaded.location is SnapshotLocation.REMOTE
    assert uploaded.checksum == local_snapshot.checksum
    assert progress[-1] == 100
    body, meta = object_session.objects[f"account-1/{local_snapshot.name}"]
    assert body == local_snapshot.path.read_bytes()
    assert meta["sha256"] == local_snapshot.checksum
    assert meta["encrypted"] == "0"
    assert object_session.last_headers["Authorization"] == f"Bearer {TOKEN}"

    listed = cloud.list_snapshots(TOKEN)
    assert [snap.name for snap in listed] == [local_snapshot.name]
    assert listed[0].checksum == local_snapshot.checksum

    fetched = cloud.download(listed[0], tmp_path / "staging", TOKEN)
    assert fetched.status is SnapshotStatus.AVAILABLE
    assert fetched.path.read_bytes() == local_snapshot.path.read_bytes()
    assert read_companion(fetched.path) == local_snapshot.checksum


def test_listing_hides_snapshots_without_a_digest(cloud, object_session, local_snapshot):
    cloud.upload(local_snapshot, TOKEN)
    del object_session.objects[f"account-1/{local_snapshot.name}.sha256"]

    assert cloud.list_snapshots(TOKEN) == []


def test_failed_companion_upload_removes_the_snapshot_object(cloud, object_session, local_snapshot):
    original = object_session.request
    puts = []

    def request(method, url, **kwargs):
        if method == "PUT":
            puts.append(url)
            if len(puts) == 2:
                return FakeResponse(503, reason="Service Unavailable")
        return original(method, url, **kwargs)

    object_session.request = request

    with pytest.raises(RemoteTransientError):
        cloud.upload(local_snapshot, TOKEN)

    assert object_session.objects == {}


def test_cancelled_upload_leaves_nothing_behind(cloud, object_session, local_snapshot):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(SyncCancelled):
        cloud.upload(local_snapshot, TOKEN, cancel_event=cancel)

    assert object_session.objects == {}


def test_cancel_after_the_last_chunk_removes_the_payload(cloud, object_session, local_snapshot):
    cancel = threading.Event()

    with pytest.raises(SyncCancelled):
        cloud.upload(local_snapshot, TOKEN, cancel_event=cancel, progress=lambda pct: pct >= 100 and cancel.set())

    assert object_session.objects == {}
    assert cloud.list_snapshots(TOKEN) == []


def test_cancelled_auto_slot_overwrite_never_lists_a_mismatched_pair(
    cloud, object_session, make_store, make_manager, tmp_path
):
    manager = make_manager(make_store(rows=2))
    first = manager.create_local_backup().snapshot
    cloud.upload(first, TOKEN, remote_name=AUTO_SLOT_NAME)
    manager.store.connection.execute("INSERT INTO symptoms(name) VALUES ('later')")
    second = manager.create_local_backup().snapshot
    assert second.checksum != first.checksum
    cancel = threading.Event()

    with pytest.raises(SyncCancelled):
        cloud.upload(
            second,
            TOKEN,
            remote_name=AUTO_SLOT_NAME,
            cancel_event=cancel,
            progress=lambda pct: pct >= 100 and cancel.set(),
        )

    for listed in cloud.list_snapshots(TOKEN):
        fetched = cloud.download(listed, tmp_path / "staging", TOKEN)
        assert fetched.status is SnapshotStatus.AVAILABLE
    assert f"account-1/{AUTO_SLOT_NAME}.sha256" not in object_session.objects
    assert f"account-1/{AUTO_SLOT_NAME}" not in object_session.objects


def test_connection_errors_are_marked_unreachable(cloud, object_session, local_snapshot):
    object_session.put_failures = [requests.ConnectionError("no route to host")]

    with pytest.raises(RemoteTransientError) as info:
        cloud.upload(local_snapshot, TOKEN)

    assert info.value.unreachable


def test_missing_token_is_an_auth_error(cloud, local_snapshot):
    with pytest.raises(RemoteAuthError):
        cloud.upload(local_snapshot, "")


def test_encrypted_upload_round_trip(object_session, local_snapshot, tmp_path):
    objects = HttpObjectStore("https://backup.example/api", session=object_session)
    cipher = SnapshotCipher("correct horse", iterations=1_000)
    cloud = CloudBackupStore(objects, cipher=cipher)

    cloud.upload(local_snapshot, TOKEN)
    body, meta = object_session.objects[local_snapshot.name]
    assert SnapshotCipher.is_encrypted(body)
    assert meta["encrypted"] == "1"

    remote = cloud.list_snapshots(TOKEN)[0]
    fetched = cloud.download(remote, tmp_path / "staging", TOKEN)
    assert fetched.status is SnapshotStatus.AVAILABLE
    assert fetched.path.read_bytes() == local_snapshot.path.read_bytes()


def test_tampered_download_is_flagged_corrupted(cloud, object_session, local_snapshot, tmp_path):
    cloud.upload(local_snapshot, TOKEN)
    key = f"account-1/{local_snapshot.name}"
    body, meta = object_session.objects[key]
    object_session.objects[key] = (body[:-1] + bytes([body[-1] ^ 0x01]), meta)

    fetched = cloud.download(cloud.list_snapshots(TOKEN)[0], tmp_path / "staging", TOKEN)

    assert fetched.status is SnapshotStatus.CORRUPTED


def test_auto_slot_is_listed_from_its_metadata(cloud, local_snapshot):
    cloud.upload(local_snapshot, TOKEN, remote_name=AUTO_SLOT_NAME)

    listed = cloud.list_snapshots(TOKEN)

    assert [snap.name for snap in listed] == [AUTO_SLOT_NAME]
    assert listed[0].schema_version == local_snapshot.schema_version
    assert listed[0].created == local_snapshot.created


def test_delete_removes_both_objects(cloud, object_session, local_snapshot):
    uploaded = cloud.upload(local_snapshot, TOKEN)

    assert cloud.delete(uploaded, TOKEN)
    assert object_session.objects == {}
    assert not cloud.delete(uploaded, TOKEN)
