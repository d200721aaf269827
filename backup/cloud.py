"""HTTP object store client and the snapshot layout kept on it."""
from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import requests
from pydantic import BaseModel, Field, ValidationError

from .crypto import SnapshotCipher
from .errors import (
    BackupVerificationError,
    RemoteAuthError,
    RemoteError,
    RemoteNotFound,
    RemoteQuotaError,
    RemoteTransientError,
    SyncCancelled,
)
from .naming import AUTO_SLOT_NAME, SNAPSHOT_SUFFIX, checksum_name, parse_name
from .retention import order_newest_first
from .types import Snapshot, SnapshotLocation, SnapshotStatus
from .verify import digest, is_valid_digest, parse_companion, write_companion

LOGGER = logging.getLogger("symptomlog.backup.cloud")

CHUNK_SIZE = 256 * 1024
_MIB = 1024 * 1024
_TRANSIENT_STATUS = {408, 429}
_QUOTA_STATUS = {413, 507}
_META_HEADER = "X-Object-Meta-"

ProgressCallback = Optional[Callable[[int], None]]


class RemoteObject(BaseModel):
    name: str
    size: int = 0
    created: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class RemoteListing(BaseModel):
    objects: List[RemoteObject] = Field(default_factory=list)
    truncated: bool = False


class RemoteErrorBody(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None


def transfer_timeout(size_bytes: int, base_s: float = 30.0) -> float:
    """Per-attempt timeout: the base plus one second per MiB of payload."""

    return float(base_s) + max(int(size_bytes), 0) / _MIB


def _error_body(response: requests.Response) -> RemoteErrorBody:
    try:
        return RemoteErrorBody.model_validate(response.json())
    except (ValueError, ValidationError):
        return RemoteErrorBody()


def raise_for_status(response: requests.Response, *, what: str) -> None:
    """Translate an HTTP status into the remote error taxonomy."""

    status = int(response.status_code)
    if status < 300:
        return
    body = _error_body(response)
    detail = body.message or response.reason or f"HTTP {status}"
    message = f"{what}: {detail} (HTTP {status})"
    if status == 404:
        raise RemoteNotFound(message)
    if status in (401, 403):
        raise RemoteAuthError(message)
    if status in _QUOTA_STATUS or (body.code or "").lower() == "quota":
        raise RemoteQuotaError(message)
    if status in _TRANSIENT_STATUS or status >= 500:
        raise RemoteTransientError(message)
    raise RemoteError(message)


def _chunks(data: bytes, cancel_event: Optional[threading.Event], progress: ProgressCallback) -> Iterator[bytes]:
    total = max(len(data), 1)
    sent = 0
    for offset in range(0, len(data), CHUNK_SIZE):
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled("upload cancelled")
        chunk = data[offset : offset + CHUNK_SIZE]
        sent += len(chunk)
        yield chunk
        if progress is not None:
            progress(int(sent * 100 / total))


class HttpObjectStore:
    """Minimal bearer-token object store over ``requests``.

    ``PUT/GET/DELETE {base}/objects/{name}`` and ``GET {base}/objects?prefix=``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = 30.0,
    ) -> None:
        if not base_url:
            raise ValueError("remote base_url is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self._session = session or requests.Session()

    def _url(self, name: str = "") -> str:
        if name:
            return f"{self.base_url}/objects/{requests.utils.quote(name, safe='')}"
        return f"{self.base_url}/objects"

    @staticmethod
    def _headers(token: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        if not token:
            raise RemoteAuthError("missing access token")
        headers = {"Authorization": f"Bearer {token}"}
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, url: str, *, what: str, **kwargs) -> requests.Response:
        try:
            response = self._session.request(method, url, **kwargs)
        except SyncCancelled:
            raise
        except requests.ConnectionError as exc:
            raise RemoteTransientError(f"{what}: network unreachable ({exc})", unreachable=True) from exc
        except requests.Timeout as exc:
            raise RemoteTransientError(f"{what}: timed out ({exc})") from exc
        except requests.RequestException as exc:
            raise RemoteError(f"{what}: {exc}") from exc
        raise_for_status(response, what=what)
        return response

    # ------------------------------------------------------------------
    def put(
        self,
        name: str,
        data: bytes,
        token: str,
        *,
        metadata: Optional[Dict[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: ProgressCallback = None,
    ) -> None:
        extra = {"Content-Type": "application/octet-stream", "Content-Length": str(len(data))}
        for key, value in (metadata or {}).items():
            extra[f"{_META_HEADER}{key}"] = str(value)
        self._request(
            "PUT",
            self._url(name),
            what=f"upload {name}",
            data=_chunks(data, cancel_event, progress),
            headers=self._headers(token, extra),
            timeout=transfer_timeout(len(data), self.timeout_s),
        )
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled("upload cancelled")

    def get(self, name: str, token: str, *, size_hint: int = 0) -> bytes:
        response = self._request(
            "GET",
            self._url(name),
            what=f"download {name}",
            headers=self._headers(token),
            timeout=transfer_timeout(size_hint, self.timeout_s),
        )
        return response.content

    def delete(self, name: str, token: str) -> bool:
        try:
            self._request(
                "DELETE",
                self._url(name),
                what=f"delete {name}",
                headers=self._headers(token),
                timeout=self.timeout_s,
            )
        except RemoteNotFound:
            return False
        return True

    def list(self, token: str, *, prefix: str = "") -> List[RemoteObject]:
        response = self._request(
            "GET",
            self._url(),
            what="list objects",
            params={"prefix": prefix},
            headers=self._headers(token),
            timeout=self.timeout_s,
        )
        try:
            listing = RemoteListing.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise RemoteTransientError(f"list objects: malformed listing ({exc})") from exc
        return listing.objects


# ----------------------------------------------------------------------
def _parse_created(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        created = datetime.fromisoformat(value)
    except ValueError:
        return None
    return created if created.tzinfo else created.replace(tzinfo=timezone.utc)


class CloudBackupStore:
    """Snapshot + companion pairs kept under one prefix on an object store."""

    def __init__(
        self,
        objects: HttpObjectStore,
        *,
        prefix: str = "",
        cipher: Optional[SnapshotCipher] = None,
    ) -> None:
        self._objects = objects
        self._prefix = prefix.strip("/")
        self._cipher = cipher

    @property
    def cipher(self) -> Optional[SnapshotCipher]:
        return self._cipher

    def set_cipher(self, cipher: Optional[SnapshotCipher]) -> None:
        self._cipher = cipher

    def _key(self, name: str) -> str:
        return f"{self._prefix}/{name}" if self._prefix else name

    def _strip(self, key: str) -> str:
        if self._prefix and key.startswith(self._prefix + "/"):
            return key[len(self._prefix) + 1 :]
        return key

    # ------------------------------------------------------------------
    def upload(
        self,
        snapshot: Snapshot,
        token: str,
        *,
        remote_name: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: ProgressCallback = None,
    ) -> Snapshot:
        """Upload the snapshot object, then its digest companion.

        The old companion goes first and a failed or cancelled payload is
        removed again, so listings never pair a digest with the wrong bytes.
        """

        if snapshot.path is None:
            raise BackupVerificationError(f"{snapshot.name} has no local file to upload")
        name = remote_name or snapshot.name
        plaintext = Path(snapshot.path).read_bytes()
        checksum = snapshot.checksum or digest(plaintext)
        payload = self._cipher.encrypt(plaintext) if self._cipher else plaintext
        metadata = {
            "schema-version": str(snapshot.schema_version),
            "created": snapshot.created.astimezone(timezone.utc).isoformat(),
            "sha256": checksum,
            "encrypted": "1" if self._cipher else "0",
        }
        key = self._key(name)
        companion_key = self._key(checksum_name(name))
        # Hide any previous pair first; an overwrite that dies halfway must not
        # list as the old digest beside new bytes.
        self._objects.delete(companion_key, token)
        try:
            self._objects.put(key, payload, token, metadata=metadata, cancel_event=cancel_event, progress=progress)
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelled("upload cancelled")
            companion = f"{checksum}  {name}\n".encode("utf-8")
            self._objects.put(companion_key, companion, token, cancel_event=cancel_event)
        except BaseException:
            try:
                self._objects.delete(key, token)
            except RemoteError as exc:
                LOGGER.warning("could not remove partial upload %s: %s", key, exc)
            raise
        LOGGER.info("uploaded %s (%d bytes)", key, len(payload))
        return Snapshot(
            name=name,
            location=SnapshotLocation.REMOTE,
            created=snapshot.created,
            size_bytes=len(payload),
            schema_version=snapshot.schema_version,
            checksum=checksum,
            sequence=snapshot.sequence,
            label=snapshot.label,
        )

    def list_snapshots(self, token: str) -> List[Snapshot]:
        objects = self._objects.list(token, prefix=self._prefix)
        by_name = {self._strip(obj.name): obj for obj in objects}
        snapshots: List[Snapshot] = []
        for name, obj in by_name.items():
            if not name.endswith(SNAPSHOT_SUFFIX):
                continue
            if checksum_name(name) not in by_name:
                continue
            snapshot = self._to_snapshot(name, obj)
            if snapshot is not None:
                snapshots.append(snapshot)
        return order_newest_first(snapshots)

    def _to_snapshot(self, name: str, obj: RemoteObject) -> Optional[Snapshot]:
        parsed = parse_name(name)
        meta = {key.lower(): value for key, value in obj.metadata.items()}
        checksum = (meta.get("sha256") or "").lower()
        if not is_valid_digest(checksum):
            checksum = ""
        if parsed is not None:
            return Snapshot(
                name=name,
                location=SnapshotLocation.REMOTE,
                created=parsed.created,
                size_bytes=obj.size,
                schema_version=parsed.schema_version,
                checksum=checksum,
                sequence=parsed.sequence,
                label=parsed.label,
            )
        created = _parse_created(meta.get("created")) or obj.created
        version = meta.get("schema-version")
        if name != AUTO_SLOT_NAME or created is None or not (version or "").isdigit():
            return None
        return Snapshot(
            name=name,
            location=SnapshotLocation.REMOTE,
            created=created,
            size_bytes=obj.size,
            schema_version=int(version),
            checksum=checksum,
        )

    def download(self, snapshot: Snapshot, dest_dir: Path, token: str) -> Snapshot:
        """Fetch ``snapshot`` into ``dest_dir`` and return it as a local snapshot.

        The digest companion is authoritative; payload bytes are decrypted
        first when needed and must hash to it.
        """

        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        companion = self._objects.get(self._key(checksum_name(snapshot.name)), token)
        expected = parse_companion(companion.decode("utf-8", errors="replace"))
        if expected is None:
            raise BackupVerificationError(f"remote digest for {snapshot.name} is malformed")
        payload = self._objects.get(self._key(snapshot.name), token, size_hint=snapshot.size_bytes)
        if SnapshotCipher.is_encrypted(payload):
            if self._cipher is None:
                raise BackupVerificationError(f"{snapshot.name} is encrypted and no password is set")
            payload = self._cipher.decrypt(payload)
        target = dest_dir / snapshot.name
        partial = target.with_name(target.name + ".partial")
        with partial.open("wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(partial, target)
        write_companion(target, expected)
        status = SnapshotStatus.AVAILABLE if digest(payload) == expected else SnapshotStatus.CORRUPTED
        return Snapshot(
            name=snapshot.name,
            location=SnapshotLocation.LOCAL,
            created=snapshot.created,
            size_bytes=len(payload),
            schema_version=snapshot.schema_version,
            checksum=expected,
            status=status,
            path=target,
            sequence=snapshot.sequence,
            label=snapshot.label,
        )

    def delete(self, snapshot: Snapshot, token: str) -> bool:
        removed = self._objects.delete(self._key(snapshot.name), token)
        self._objects.delete(self._key(checksum_name(snapshot.name)), token)
        return removed

    def storage_bytes(self, snapshots: List[Snapshot]) -> int:
        return sum(snap.size_bytes for snap in snapshots)


__all__ = [
    "CloudBackupStore",
    "HttpObjectStore",
    "RemoteListing",
    "RemoteObject",
    "raise_for_status",
    "transfer_timeout",
]
