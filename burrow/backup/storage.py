"""
Storage backends for backup artifacts.

Every backend offers the same capability: upload, download, list, delete
and close over a flat namespace of artifact names. Supported variants:
- SFTPStorage: a directory on a remote host over SSH/SFTP (e.g. a NAS)
- S3Storage: a bucket prefix on AWS S3 or an S3-compatible service
- LocalStorage: a directory on the local filesystem

Modification times cross the boundary as 'YYYY-MM-DD HH:MM:SS UTC' strings.
"""

import os
import posixpath
import shutil
import stat
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from burrow.models import MOD_TIME_FORMAT, BackendSettings, BackupFile


MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when a storage operation fails."""

    def __init__(self, message: str, backend: Optional[str] = None):
        super().__init__(message)
        self.backend = backend


class ArtifactNotFoundError(StorageError):
    """Raised when the named artifact does not exist on the backend."""
    pass


class StorageBackend(Protocol):
    """Capability shared by all storage variants."""

    name: str

    def upload(self, local_path: str, remote_name: str) -> None: ...

    def download(self, remote_name: str, local_path: str) -> None: ...

    def list(self, prefix: str = '') -> List[BackupFile]: ...

    def delete(self, remote_name: str) -> None: ...

    def close(self) -> None: ...


def format_mod_time(when: datetime) -> str:
    """Format a datetime (naive values are taken as UTC) in the exchange format."""
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc)
    return when.strftime(MOD_TIME_FORMAT)


def format_timestamp(epoch_seconds: float) -> str:
    return format_mod_time(datetime.fromtimestamp(epoch_seconds, tz=timezone.utc))


def _clean_base(path: Optional[str]) -> str:
    path = (path or '').replace('\\', '/')
    while path.startswith('./'):
        path = path[2:]
    return path.rstrip('/')


class SFTPStorage:
    """
    Backend storing artifacts in a directory on a remote host via SFTP.

    Holds one SSH session for its lifetime, opened on first use.
    """

    def __init__(
        self,
        name: str,
        host: str,
        username: str,
        key_file: Optional[str] = None,
        password: Optional[str] = None,
        path: str = '.',
        port: int = 22,
        timeout: int = 30
    ):
        """
        Initialize SFTP storage handler.

        Args:
            name: Backend name used in logs and errors
            host: SSH hostname or IP
            username: SSH username
            key_file: Path to private key file ('~' is expanded)
            password: SSH password (used when no key file is given)
            path: Remote base directory, relative to the login directory or absolute
            port: SSH port
            timeout: Connection timeout in seconds
        """
        self.name = name
        self.host = host
        self.port = int(port)
        self.username = username
        self.key_file = key_file
        self.password = password
        self.base_path = _clean_base(path)
        self.timeout = timeout

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            StorageError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.load_system_host_keys()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': self.timeout
            }

            if self.key_file:
                key_path = Path(self.key_file).expanduser()
                if not key_path.exists():
                    raise StorageError(f"Private key not found: {self.key_file}", self.name)
                connect_kwargs['key_filename'] = str(key_path)
            elif self.password:
                connect_kwargs['password'] = self.password
            else:
                raise StorageError("Either key_file or password must be provided", self.name)

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except StorageError:
            self.close()
            raise
        except paramiko.AuthenticationException as e:
            self.close()
            raise StorageError(f"SSH authentication failed for {self.host}: {e}", self.name) from e
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}", self.name) from e

    @property
    def sftp(self):
        if self.sftp_client is None:
            self._connect()
        return self.sftp_client

    def _remote_path(self, remote_name: str) -> str:
        return posixpath.join(self.base_path, remote_name) if self.base_path else remote_name

    def _mkdir_all(self, path: str):
        """Create a remote directory and any missing parents."""
        if not path or path in ('.', '/'):
            return

        current = '/' if path.startswith('/') else ''
        for component in path.split('/'):
            if not component or component == '.':
                continue
            current = posixpath.join(current, component) if current else component
            try:
                self.sftp.stat(current)
            except FileNotFoundError:
                self.sftp.mkdir(current)

    def upload(self, local_path: str, remote_name: str):
        """
        Upload a local file as remote_name.

        Raises:
            StorageError: If the upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}", self.name)

        remote_path = self._remote_path(remote_name)
        try:
            self._mkdir_all(self.base_path)
            self.sftp.put(local_path, remote_path)
        except StorageError:
            raise
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to upload {remote_name} to {self.host}: {e}", self.name) from e

    def download(self, remote_name: str, local_path: str):
        """
        Download remote_name into local_path.

        Raises:
            ArtifactNotFoundError: If the artifact does not exist
            StorageError: If the download fails
        """
        remote_path = self._remote_path(remote_name)
        try:
            self.sftp.stat(remote_path)
            self.sftp.get(remote_path, local_path)
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"Remote file not found: {remote_path}", self.name) from e
        except StorageError:
            raise
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to download {remote_name} from {self.host}: {e}", self.name) from e

    def list(self, prefix: str = '') -> List[BackupFile]:
        """
        List artifacts whose names start with prefix.

        A base directory that does not exist yet holds no artifacts.

        Raises:
            StorageError: If listing fails
        """
        try:
            entries = self.sftp.listdir_attr(self.base_path or '.')
        except FileNotFoundError:
            return []
        except StorageError:
            raise
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to list {self.base_path or '.'} on {self.host}: {e}", self.name) from e

        files = []
        for entry in entries:
            if entry.st_mode is not None and not stat.S_ISREG(entry.st_mode):
                continue
            if not entry.filename.startswith(prefix):
                continue
            files.append(BackupFile(
                name=entry.filename,
                size=entry.st_size or 0,
                mod_time=format_timestamp(entry.st_mtime or 0),
                backend=self.name
            ))
        return files

    def delete(self, remote_name: str):
        """
        Delete remote_name.

        Raises:
            ArtifactNotFoundError: If the artifact does not exist
            StorageError: If deletion fails
        """
        remote_path = self._remote_path(remote_name)
        try:
            self.sftp.remove(remote_path)
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"Remote file not found: {remote_path}", self.name) from e
        except StorageError:
            raise
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to delete {remote_name} on {self.host}: {e}", self.name) from e

    def close(self):
        """Close SFTP/SSH connections."""
        errors = []
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except Exception as e:
                errors.append(f"SFTP client: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                errors.append(f"SSH client: {e}")
            self.ssh_client = None

        if errors:
            raise StorageError(f"Errors closing connections: {'; '.join(errors)}", self.name)


class S3Storage:
    """
    Backend storing artifacts as objects in an S3 bucket.

    Objects are keyed as {path}/{artifact name}. A custom endpoint selects an
    S3-compatible service such as Backblaze B2 or MinIO.
    """

    def __init__(
        self,
        name: str,
        bucket: str,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint: Optional[str] = None,
        path: str = ''
    ):
        """
        Initialize S3 storage handler.

        Args:
            name: Backend name used in logs and errors
            bucket: S3 bucket name
            access_key_id: Access key ID (None uses the default credential chain)
            secret_access_key: Secret access key
            region: Region name
            endpoint: Custom endpoint URL for S3-compatible services
            path: Key prefix under which artifacts are stored
        """
        self.name = name
        self.bucket_name = bucket
        self.region = region
        self.base_path = _clean_base(path).lstrip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                region_name=region,
                endpoint_url=endpoint or None
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}", name) from e

    def _key(self, remote_name: str) -> str:
        return f"{self.base_path}/{remote_name}" if self.base_path else remote_name

    def upload(self, local_path: str, remote_name: str):
        """
        Upload a local file as remote_name.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}", self.name)

        key = self._key(remote_name)
        try:
            if os.path.getsize(local_path) > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload of {key} failed ({error_code}): {e}", self.name) from e
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload of {key} failed: {e}", self.name) from e

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            # Abort multipart upload so no orphaned parts are billed
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def download(self, remote_name: str, local_path: str):
        """
        Download remote_name into local_path.

        Raises:
            ArtifactNotFoundError: If the object does not exist
            StorageError: If the download fails
        """
        key = self._key(remote_name)
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            with open(local_path, 'wb') as f:
                shutil.copyfileobj(response['Body'], f)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('NoSuchKey', '404', 'NotFound'):
                raise ArtifactNotFoundError(f"S3 object not found: {key}", self.name) from e
            raise StorageError(f"S3 download of {key} failed ({error_code}): {e}", self.name) from e
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 download of {key} failed: {e}", self.name) from e

    def list(self, prefix: str = '') -> List[BackupFile]:
        """
        List artifacts whose names start with prefix.

        Raises:
            StorageError: If listing fails
        """
        try:
            files = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self._key(prefix)):
                for obj in page.get('Contents', []):
                    key = obj['Key']
                    # Skip directory placeholders
                    if key.endswith('/'):
                        continue
                    files.append(BackupFile(
                        name=posixpath.basename(key),
                        size=obj.get('Size') or 0,
                        mod_time=format_mod_time(obj['LastModified']),
                        backend=self.name
                    ))

            return files

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}", self.name) from e
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}", self.name) from e

    def delete(self, remote_name: str):
        """
        Delete remote_name.

        Raises:
            ArtifactNotFoundError: If the object does not exist
            StorageError: If deletion fails
        """
        key = self._key(remote_name)
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('NoSuchKey', '404', 'NotFound'):
                raise ArtifactNotFoundError(f"S3 object not found: {key}", self.name) from e
            raise StorageError(f"S3 delete of {key} failed ({error_code}): {e}", self.name) from e
        except BotoCoreError as e:
            raise StorageError(f"S3 delete of {key} failed: {e}", self.name) from e

    def close(self):
        """Release the HTTP connection pool."""
        try:
            self.s3_client.close()
        except BotoCoreError as e:
            raise StorageError(f"Failed to close S3 client: {e}", self.name) from e


class LocalStorage:
    """
    Backend storing artifacts in a local directory (e.g. a mounted share).
    """

    def __init__(self, name: str, path: str):
        """
        Initialize local storage handler.

        Args:
            name: Backend name used in logs and errors
            path: Directory holding the artifacts (created if missing)
        """
        self.name = name
        self.base_path = Path(path).expanduser()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}", name) from e

    def upload(self, local_path: str, remote_name: str):
        """
        Copy a file into the storage directory.

        Raises:
            StorageError: If the copy fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}", self.name)

        dest_path = self.base_path / remote_name
        try:
            # Copy then rename so a listing never shows a half-written artifact
            fd, tmp_path = tempfile.mkstemp(dir=self.base_path, prefix='.upload-')
            os.close(fd)
            try:
                shutil.copyfile(local_path, tmp_path)
                os.replace(tmp_path, dest_path)
            finally:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}", self.name) from e
        except OSError as e:
            raise StorageError(f"Failed to store {remote_name} locally: {e}", self.name) from e

    def download(self, remote_name: str, local_path: str):
        """
        Copy an artifact out of the storage directory.

        Raises:
            ArtifactNotFoundError: If the artifact does not exist
            StorageError: If the copy fails
        """
        source_path = self.base_path / remote_name
        if not source_path.is_file():
            raise ArtifactNotFoundError(f"Local file not found: {source_path}", self.name)
        try:
            shutil.copyfile(source_path, local_path)
        except OSError as e:
            raise StorageError(f"Failed to copy {source_path}: {e}", self.name) from e

    def list(self, prefix: str = '') -> List[BackupFile]:
        """
        List artifacts whose names start with prefix.

        Raises:
            StorageError: If listing fails
        """
        try:
            files = []
            with os.scandir(self.base_path) as it:
                for entry in it:
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    if entry.name.startswith('.upload-') or not entry.name.startswith(prefix):
                        continue
                    st = entry.stat(follow_symlinks=False)
                    files.append(BackupFile(
                        name=entry.name,
                        size=st.st_size,
                        mod_time=format_timestamp(st.st_mtime),
                        backend=self.name
                    ))
            return files
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}", self.name) from e

    def delete(self, remote_name: str):
        """
        Delete an artifact.

        Raises:
            ArtifactNotFoundError: If the artifact does not exist
            StorageError: If deletion fails
        """
        full_path = self.base_path / remote_name
        try:
            full_path.unlink()
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"Local file not found: {full_path}", self.name) from e
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}", self.name) from e
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}", self.name) from e

    def close(self):
        """Nothing to release for a local directory."""
        pass


class SynchronizedStorage:
    """
    Serializes access to a backend shared by concurrent operations.

    Sessions such as an SFTP channel are not safe for concurrent use, so
    every call on the wrapped backend runs under one lock.
    """

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self.name = backend.name
        self._lock = threading.RLock()

    def upload(self, local_path: str, remote_name: str):
        with self._lock:
            self.backend.upload(local_path, remote_name)

    def download(self, remote_name: str, local_path: str):
        with self._lock:
            self.backend.download(remote_name, local_path)

    def list(self, prefix: str = '') -> List[BackupFile]:
        with self._lock:
            return self.backend.list(prefix)

    def delete(self, remote_name: str):
        with self._lock:
            self.backend.delete(remote_name)

    def close(self):
        with self._lock:
            self.backend.close()

    def __repr__(self):
        return f'<SynchronizedStorage {self.name}>'


def create_storage(settings: BackendSettings) -> StorageBackend:
    """
    Factory function to create a backend from its descriptor.

    Args:
        settings: Backend name, type and options

    Returns:
        Backend wrapped for shared use

    Raises:
        StorageError: If the type is unknown or required options are missing
    """
    options = dict(settings.options)

    def require(*keys):
        missing = [k for k in keys if not options.get(k)]
        if missing:
            raise StorageError(
                f"Backend {settings.name} ({settings.type}) is missing options: {', '.join(missing)}",
                settings.name
            )

    if settings.type == 'sftp':
        require('host', 'username')
        backend = SFTPStorage(
            name=settings.name,
            host=options['host'],
            username=options['username'],
            key_file=options.get('key_file'),
            password=options.get('password'),
            path=options.get('path', '.'),
            port=options.get('port', 22),
        )
    elif settings.type == 's3':
        require('bucket')
        backend = S3Storage(
            name=settings.name,
            bucket=options['bucket'],
            access_key_id=options.get('access_key_id'),
            secret_access_key=options.get('secret_access_key'),
            region=options.get('region') or 'us-east-1',
            endpoint=options.get('endpoint'),
            path=options.get('path', ''),
        )
    elif settings.type == 'local':
        require('path')
        backend = LocalStorage(name=settings.name, path=options['path'])
    else:
        raise StorageError(f"Invalid backend type: {settings.type}", settings.name)

    return SynchronizedStorage(backend)
