"""
Storage backends for backup artifacts.

Supports:
- ObjectStorage: Folder in an S3 bucket
- SFTPStorage: Directory on a remote server over SFTP
- LocalStorage: Local directory

Every backend resolves a named container with ensure_target() (get or
create, never duplicated) and stores byte streams in it with upload().
Exactly one backend is selected per run through create_storage().
"""

import logging
import posixpath
import shutil
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Optional

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError

from ..auth import DelegatedAuthorizer
from ..config import Config, ObjectStoreConfig, SftpConfig, StorageMethod
from ..exceptions import (
    BackendPrereqMissing,
    BackupError,
    HostIdentityUntrusted,
    TransportConnectFailure,
    UploadFailure,
)
from .hostkeys import TrustOnConnectPolicy
from .sources import ArtifactKind


logger = logging.getLogger(__name__)

FOLDER_CONTENT_TYPE = 'application/x-directory'

# 10MB parts; streams that fit in one part go through put_object
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


@dataclass(frozen=True)
class StorageTarget:
    """Resolved backup container: folder key prefix, remote or local path."""

    name: str
    identifier: str


@dataclass(frozen=True)
class UploadResult:
    identifier: str
    name: str
    size: int


class StorageBackend(ABC):
    """Common interface of all storage backends."""

    method: StorageMethod

    def __init__(self):
        self._targets: Dict[str, StorageTarget] = {}

    def connect(self):
        """Establish a session. Backends without sessions do nothing."""

    def ensure_target(self, name: str) -> StorageTarget:
        """
        Resolve the backup container, creating it if necessary.

        Results are cached, so repeated calls return the same target.

        Args:
            name: Container name

        Returns:
            StorageTarget for the container
        """
        if name not in self._targets:
            self._targets[name] = self._resolve_target(name)
        return self._targets[name]

    @abstractmethod
    def _resolve_target(self, name: str) -> StorageTarget:
        ...

    @abstractmethod
    def upload(self, target: StorageTarget, name: str, kind: ArtifactKind, stream: BinaryIO,
               content_type: str = 'application/octet-stream') -> UploadResult:
        """
        Store a byte stream in the target container.

        Raises:
            UploadFailure: If the transfer fails
        """

    def close(self):
        """Release the session. Backends without sessions do nothing."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class ObjectStorage(StorageBackend):
    """
    Handler for storing backups in an S3 bucket.

    A folder is a zero-byte marker object ``{name}/`` with the folder content
    type; artifacts are stored as ``{name}/{filename}``.
    """

    method = StorageMethod.OBJECT_STORE

    def __init__(self, bucket_name: str, region: Optional[str] = None, endpoint_url: Optional[str] = None,
                 credentials: Optional[Dict[str, Optional[str]]] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region
            endpoint_url: Custom endpoint for S3-compatible services
            credentials: aws_access_key_id/aws_secret_access_key/aws_session_token
        """
        super().__init__()

        if not bucket_name:
            raise BackendPrereqMissing("Object store bucket is not configured")

        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                region_name=region,
                endpoint_url=endpoint_url or None,
                **(credentials or {})
            )
        except (BotoCoreError, ValueError) as e:
            raise BackendPrereqMissing(f"Failed to initialize S3 client: {e}")

    def _resolve_target(self, name: str) -> StorageTarget:
        folder_key = f"{name.strip('/')}/"

        try:
            if self._find_folder(folder_key):
                logger.info(f"Using existing folder '{name}'")
            else:
                logger.info(f"Creating folder '{name}'")
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=folder_key,
                    Body=b'',
                    ContentType=FOLDER_CONTENT_TYPE
                )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise BackendPrereqMissing(f"Failed to resolve folder '{name}' ({error_code}): {e}")
        except BotoCoreError as e:
            raise BackendPrereqMissing(f"Failed to resolve folder '{name}': {e}")

        return StorageTarget(name=name, identifier=folder_key)

    def _find_folder(self, folder_key: str) -> bool:
        # First listed object under the prefix decides
        response = self.s3_client.list_objects_v2(Bucket=self.bucket_name, Prefix=folder_key, MaxKeys=1)
        contents = response.get('Contents') or []
        if not contents or contents[0]['Key'] != folder_key:
            return False

        head = self.s3_client.head_object(Bucket=self.bucket_name, Key=folder_key)
        return head.get('ContentType') == FOLDER_CONTENT_TYPE

    def upload(self, target: StorageTarget, name: str, kind: ArtifactKind, stream: BinaryIO,
               content_type: str = 'application/octet-stream') -> UploadResult:
        """
        Upload a stream into the target folder.

        Args:
            target: Folder returned by ensure_target()
            name: File name inside the folder
            kind: Artifact kind, stored as object metadata
            stream: Readable binary stream
            content_type: MIME type of the object

        Returns:
            UploadResult with the object key

        Raises:
            UploadFailure: If upload fails
        """
        key = f"{target.identifier}{name}"
        extra = {
            'ContentType': content_type,
            'Metadata': {'name': name, 'kind': kind.value},
        }

        try:
            first = stream.read(MULTIPART_CHUNK_SIZE)
            if len(first) < MULTIPART_CHUNK_SIZE:
                self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=first, **extra)
                size = len(first)
            else:
                size = self._multipart_upload(key, first, stream, extra)

            return UploadResult(identifier=key, name=name, size=size)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadFailure(f"S3 upload of '{name}' failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise UploadFailure(f"S3 upload of '{name}' failed: {e}")

    def _multipart_upload(self, key: str, first: bytes, stream: BinaryIO, extra: dict) -> int:
        """
        Upload a large stream in parts, aborting the upload on any error.

        Returns:
            Number of bytes uploaded
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key, **extra)
        upload_id = response['UploadId']

        parts = []
        size = 0

        try:
            data = first
            part_number = 1

            while data:
                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )
                parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                size += len(data)
                part_number += 1
                data = stream.read(MULTIPART_CHUNK_SIZE)

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
            return size

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {e}")
            raise


class SFTPStorage(StorageBackend):
    """
    Handler for storing backups on a remote server over SFTP.

    connect() must be called before ensure_target() and upload(). When a
    trusted host identity is configured the connection only proceeds if the
    server presents exactly that identity.
    """

    method = StorageMethod.SFTP

    def __init__(self, config: SftpConfig):
        """
        Initialize SFTP storage handler.

        Args:
            config: SFTP settings (host, credentials, trusted host identity)
        """
        super().__init__()
        self.config = config
        self.ssh_client = None
        self.sftp_client = None

    def _connect_kwargs(self) -> dict:
        connect_kwargs = {
            'hostname': self.config.host,
            'port': self.config.port or 22,
            'username': self.config.username,
            'timeout': self.config.handshake_timeout or None,
            'banner_timeout': self.config.handshake_timeout or None,
            'auth_timeout': self.config.handshake_timeout or None,
            'allow_agent': False,
            'look_for_keys': False,
        }

        if self.config.private_key:
            key_path = Path(self.config.private_key).expanduser()
            if not key_path.exists():
                raise BackendPrereqMissing(f"Private key not found: {self.config.private_key}")
            connect_kwargs['key_filename'] = str(key_path)
            if self.config.passphrase:
                connect_kwargs['passphrase'] = self.config.passphrase
        elif self.config.password:
            connect_kwargs['password'] = self.config.password
        else:
            raise BackendPrereqMissing("Either an SFTP password or private key must be configured")

        return connect_kwargs

    def connect(self):
        """
        Open the SSH session and SFTP channel.

        The SSH handshake runs on a worker thread. This thread waits for the
        host key decision for at most ``handshake_timeout`` seconds, then for
        authentication to finish.

        Raises:
            BackendPrereqMissing: If host or username are not configured
            HostIdentityUntrusted: If the host key does not match
            TransportConnectFailure: If the connection fails or times out
        """
        if not self.config.host or not self.config.host.strip():
            raise BackendPrereqMissing("No SFTP host configured")
        if not self.config.username or not self.config.username.strip():
            raise BackendPrereqMissing("No SFTP username configured")

        connect_kwargs = self._connect_kwargs()
        timeout = self.config.handshake_timeout or None

        self.ssh_client = paramiko.SSHClient()
        policy = TrustOnConnectPolicy(self.config.trusted_host)
        self.ssh_client.set_missing_host_key_policy(policy)

        logger.info(f"Connecting to {self.config.host}:{connect_kwargs['port']}...")
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='sftp-connect')

        try:
            connecting = pool.submit(self.ssh_client.connect, **connect_kwargs)
            connecting.add_done_callback(policy.abandon)

            trusted, presented = policy.wait(timeout)
            if not trusted:
                raise HostIdentityUntrusted(f"Host key presented by {self.config.host} is not trusted: {presented}")

            connecting.result(timeout=timeout)
            self.sftp_client = self.ssh_client.open_sftp()

        except BackupError:
            self.close()
            raise
        except FutureTimeout:
            self.close()
            raise TransportConnectFailure(f"Timed out connecting to {self.config.host}")
        except paramiko.AuthenticationException as e:
            self.close()
            raise TransportConnectFailure(f"SFTP authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise TransportConnectFailure(f"Failed to connect to {self.config.host}: {e}")
        finally:
            pool.shutdown(wait=False)

        logger.info(f"Connected to {self.config.host}")

    def _require_session(self):
        if self.sftp_client is None:
            raise TransportConnectFailure("SFTP session is not connected")

    def _resolve_target(self, name: str) -> StorageTarget:
        self._require_session()
        path = name.rstrip('/') or '/'

        try:
            self.sftp_client.listdir(path)
        except FileNotFoundError:
            logger.info(f"Creating remote directory {path}")
            try:
                self.sftp_client.mkdir(path)
            except OSError as e:
                raise TransportConnectFailure(f"Failed to create remote directory {path}: {e}")
        except OSError as e:
            raise TransportConnectFailure(f"Failed to list remote directory {path}: {e}")

        return StorageTarget(name=name, identifier=path)

    def upload(self, target: StorageTarget, name: str, kind: ArtifactKind, stream: BinaryIO,
               content_type: str = 'application/octet-stream') -> UploadResult:
        self._require_session()
        remote_path = posixpath.join(target.identifier, name)

        try:
            attrs = self.sftp_client.putfo(stream, remote_path)
        except (paramiko.SSHException, OSError) as e:
            raise UploadFailure(f"SFTP upload to {remote_path} failed: {e}")

        return UploadResult(identifier=remote_path, name=name, size=attrs.st_size or 0)

    def close(self):
        """Close SFTP/SSH connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.debug(f"Error closing SFTP channel: {e}")
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None


class LocalStorage(StorageBackend):
    """Handler for storing backups in a local directory."""

    method = StorageMethod.FILESYSTEM

    def _resolve_target(self, name: str) -> StorageTarget:
        path = Path(name).expanduser()

        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackendPrereqMissing(f"Failed to create local storage directory {path}: {e}")

        return StorageTarget(name=name, identifier=str(path))

    def upload(self, target: StorageTarget, name: str, kind: ArtifactKind, stream: BinaryIO,
               content_type: str = 'application/octet-stream') -> UploadResult:
        dest_path = Path(target.identifier) / name

        try:
            with open(dest_path, 'wb') as f:
                shutil.copyfileobj(stream, f)
        except PermissionError as e:
            raise UploadFailure(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise UploadFailure(f"Failed to store {dest_path}: {e}")

        return UploadResult(identifier=str(dest_path), name=name, size=dest_path.stat().st_size)


def target_name(config: Config) -> str:
    """Name of the backup container for the configured backend."""
    if config.storage_method is StorageMethod.SFTP:
        return config.sftp.directory
    if config.storage_method is StorageMethod.OBJECT_STORE:
        return config.object_store.folder
    return str(config.filesystem.resolved_path())


def create_storage(config: Config, headless: bool = False) -> StorageBackend:
    """
    Factory function to create the configured storage backend.

    Args:
        config: Complete configuration
        headless: Never prompt for object store authorization

    Returns:
        ObjectStorage, SFTPStorage or LocalStorage instance

    Raises:
        BackendPrereqMissing: If the backend cannot be set up
    """
    if config.storage_method is StorageMethod.SFTP:
        return SFTPStorage(config.sftp)
    elif config.storage_method is StorageMethod.FILESYSTEM:
        return LocalStorage()
    elif config.storage_method is StorageMethod.OBJECT_STORE:
        return _create_object_storage(config.object_store, headless)
    else:
        raise BackendPrereqMissing(f"Invalid storage method: {config.storage_method}")


def _create_object_storage(config: ObjectStoreConfig, headless: bool) -> ObjectStorage:
    credentials = DelegatedAuthorizer(config, headless=headless).credentials()
    return ObjectStorage(
        bucket_name=config.bucket,
        region=config.region,
        endpoint_url=config.endpoint_url,
        credentials=credentials
    )
