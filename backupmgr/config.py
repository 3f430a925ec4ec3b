"""
Persistent configuration for Backup Manager.

The whole configuration lives in a single JSON file in the user's home
directory. It is read once at start, may be mutated during the run (rotated
object store tokens) and is written back only when a run succeeds.

Sections keep keys they do not know about in ``extra`` and write them back
verbatim, so settings of other backends or other versions survive a save.
"""

import json
import os
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import ConfigInvalid


CONFIG_NAME = 'BackupManager.v1.json'

# Seconds before the recorded expiry at which a token is considered stale
TOKEN_EXPIRY_SKEW = 60


def default_config_path() -> Path:
    """Return the configuration path, honouring BACKUPMGR_CONFIG."""
    override = os.environ.get('BACKUPMGR_CONFIG')
    if override:
        return Path(override).expanduser()
    return Path.home() / CONFIG_NAME


class StorageMethod(str, Enum):
    """Storage backend selected for a run."""

    SFTP = 'sftp'
    OBJECT_STORE = 'object_store'
    FILESYSTEM = 'filesystem'


def _split(cls, data: Optional[Dict[str, Any]]):
    """Separate known dataclass fields from unknown keys."""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigInvalid(f"Expected a mapping for {cls.__name__}, got {type(data).__name__}")
    names = {f.name for f in fields(cls)} - {'extra'}
    known = {key: value for key, value in data.items() if key in names}
    extra = {key: value for key, value in data.items() if key not in names}
    return known, extra


def _safe_int(value, name: str, default: Optional[int] = 0) -> Optional[int]:
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigInvalid(f"Value of '{name}' must be an integer, got {value!r}")


def _strict_bool(value, name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigInvalid(f"Value of '{name}' must be true or false, got {value!r}")
    return value


class _Section:
    """Shared to_dict/from_dict behaviour for configuration sections."""

    _int_fields = ()
    # Integers where null means "not recorded"
    _optional_int_fields = ()
    _bool_fields = ()

    @classmethod
    def _coerce(cls, known: Dict[str, Any]) -> Dict[str, Any]:
        for name in cls._int_fields:
            if name in known:
                known[name] = _safe_int(known[name], name)
        for name in cls._optional_int_fields:
            if name in known:
                known[name] = _safe_int(known[name], name, default=None)
        for name in cls._bool_fields:
            if name in known:
                known[name] = _strict_bool(known[name], name)
        return known

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        known, extra = _split(cls, data)
        return cls(extra=extra, **cls._coerce(known))

    def to_dict(self) -> Dict[str, Any]:
        result = {f.name: getattr(self, f.name) for f in fields(self) if f.name != 'extra'}
        result.update(self.extra)
        return result


@dataclass
class CredentialRecord(_Section):
    """OAuth token state for the object store's delegated authorization."""

    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    issued: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _optional_int_fields = ('expires_in',)

    @property
    def issued_at(self) -> datetime:
        """Issue time, defaulting to the epoch when never recorded."""
        if not self.issued:
            return datetime(1970, 1, 1, tzinfo=timezone.utc)
        issued = datetime.fromisoformat(self.issued)
        if issued.tzinfo is None:
            issued = issued.replace(tzinfo=timezone.utc)
        return issued

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.access_token or self.expires_in is None:
            return True
        now = now or datetime.now(timezone.utc)
        expires_at = self.issued_at + timedelta(seconds=int(self.expires_in) - TOKEN_EXPIRY_SKEW)
        return now >= expires_at

    def update_from_token(self, response: Dict[str, Any], now: Optional[datetime] = None):
        """
        Store the fields of a token endpoint response.

        Fields missing from the response are left as they are, so a refresh
        that does not rotate the refresh token keeps the old one.

        Args:
            response: Token response (``accessToken``, ``tokenType``,
                ``expiresIn``, ``refreshToken``)
            now: Issue time, defaults to the current UTC time
        """
        now = now or datetime.now(timezone.utc)

        if response.get('accessToken') is not None:
            self.access_token = response['accessToken']
        if response.get('tokenType') is not None:
            self.token_type = response['tokenType']
        if response.get('expiresIn') is not None:
            self.expires_in = int(response['expiresIn'])
        if response.get('refreshToken') is not None:
            self.refresh_token = response['refreshToken']

        self.issued = now.isoformat()

    def clear(self):
        """Forget the access token; the refresh token is kept."""
        self.access_token = None
        self.token_type = None
        self.expires_in = None
        self.issued = None


@dataclass
class SftpConfig(_Section):
    host: Optional[str] = None
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = None
    private_key: Optional[str] = None
    passphrase: Optional[str] = None
    directory: str = 'backups'
    trusted_host: Optional[str] = None
    handshake_timeout: int = 30
    extra: Dict[str, Any] = field(default_factory=dict)

    _int_fields = ('port', 'handshake_timeout')


@dataclass
class FilesystemConfig(_Section):
    path: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def resolved_path(self) -> Path:
        """Backup directory; ``~/Backups`` when none is configured."""
        if not self.path or not self.path.strip():
            return Path.home() / 'Backups'
        return Path(self.path).expanduser()


@dataclass
class ObjectStoreConfig(_Section):
    bucket: Optional[str] = None
    region: Optional[str] = None
    folder: str = 'Backups'
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    sso_start_url: Optional[str] = None
    sso_region: Optional[str] = None
    sso_account_id: Optional[str] = None
    sso_role_name: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    client_secret_expires_at: Optional[int] = None
    credentials: CredentialRecord = field(default_factory=CredentialRecord)
    extra: Dict[str, Any] = field(default_factory=dict)

    _optional_int_fields = ('client_secret_expires_at',)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ObjectStoreConfig':
        known, extra = _split(cls, data)
        known = cls._coerce(known)
        known['credentials'] = CredentialRecord.from_dict(known.get('credentials'))
        return cls(extra=extra, **known)

    def to_dict(self) -> Dict[str, Any]:
        result = {f.name: getattr(self, f.name) for f in fields(self) if f.name not in ('extra', 'credentials')}
        result['credentials'] = self.credentials.to_dict()
        result.update(self.extra)
        return result

    @property
    def has_static_keys(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)


@dataclass
class MySqlConfig(_Section):
    dump_path: str = 'mysqldump'
    dump_path_windows: str = r'C:\Program Files\MariaDB 10.3\bin\mysqldump.exe'
    host: str = 'localhost'
    user: Optional[str] = None
    password: Optional[str] = None
    databases: str = 'misuzu'
    compress: bool = True
    dump_to_stdout: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    _bool_fields = ('compress', 'dump_to_stdout')

    def executable(self) -> str:
        return self.dump_path_windows if os.name == 'nt' else self.dump_path


@dataclass
class ApplicationConfig(_Section):
    path: Optional[str] = None
    config_file: str = 'config/config.ini'
    default_store: str = 'store'
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationConfig(_Section):
    host: Optional[str] = None
    port: int = 0
    secret: Optional[str] = None
    errors_only: bool = True
    timeout: int = 5
    extra: Dict[str, Any] = field(default_factory=dict)

    _int_fields = ('port', 'timeout')
    _bool_fields = ('errors_only',)


@dataclass
class Config:
    """Complete persisted configuration."""

    storage_method: StorageMethod = StorageMethod.SFTP
    sftp: SftpConfig = field(default_factory=SftpConfig)
    filesystem: FilesystemConfig = field(default_factory=FilesystemConfig)
    object_store: ObjectStoreConfig = field(default_factory=ObjectStoreConfig)
    mysql: MySqlConfig = field(default_factory=MySqlConfig)
    application: ApplicationConfig = field(default_factory=ApplicationConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    extra: Dict[str, Any] = field(default_factory=dict)

    _sections = {
        'sftp': SftpConfig,
        'filesystem': FilesystemConfig,
        'object_store': ObjectStoreConfig,
        'mysql': MySqlConfig,
        'application': ApplicationConfig,
        'notification': NotificationConfig,
    }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        known, extra = _split(cls, data)

        method = known.pop('storage_method', StorageMethod.SFTP.value)
        try:
            storage_method = StorageMethod(method)
        except ValueError:
            valid = [m.value for m in StorageMethod]
            raise ConfigInvalid(f"Invalid storage method: {method}. Valid options: {valid}")

        sections = {name: section.from_dict(known.get(name)) for name, section in cls._sections.items()}
        return cls(storage_method=storage_method, extra=extra, **sections)

    def to_dict(self) -> Dict[str, Any]:
        result = {'storage_method': self.storage_method.value}
        for name in self._sections:
            result[name] = getattr(self, name).to_dict()
        result.update(self.extra)
        return result


def load_config(path: Path) -> Config:
    """
    Read the configuration file.

    Args:
        path: Configuration file path

    Returns:
        Parsed Config

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigInvalid: If the file is not valid configuration JSON
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        raise ConfigInvalid(f"Failed to parse {path}: {e}")

    return Config.from_dict(data)


def save_config(config: Config, path: Path):
    """
    Write the configuration file, replacing any previous content.

    The file is written next to its destination first and moved into place,
    so an interrupted save never leaves a truncated configuration behind.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = path.with_name(path.name + '.tmp')
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(config.to_dict(), f, indent=2)
        f.write('\n')
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)
