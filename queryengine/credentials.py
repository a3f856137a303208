"""
Credential resolution for directory, graph and report executors.

Resolution order:
    1. explicit credentials supplied by the caller
    2. system credentials, when requested or when there is no user
    3. the user's stored credentials, falling back to system credentials
       when the lookup fails or finds nothing

Resolved credentials are cached for ``user_credential_ttl_seconds``. The
engine hands them to executors as an opaque value and never inspects them.

Stored secrets are returned as stored: decryption is a pass-through.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from queryengine import errors
from queryengine.core.config import Settings
from queryengine.models import DataSource

logger = logging.getLogger(__name__)

# (user_id, data_source, credential_id) -> stored credential record or None
UserCredentialLookup = Callable[[str, DataSource, Optional[str]], Optional[Mapping[str, Any]]]


@dataclass
class ServiceCredentials:
    username: str = ""
    password: str = field(default="", repr=False)
    domain: Optional[str] = None
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)


class CredentialProvider(ABC):
    @abstractmethod
    def get_credentials(
        self,
        data_source: DataSource,
        user_id: Optional[str] = None,
        credential_id: Optional[str] = None,
        explicit: Optional[ServiceCredentials] = None,
        use_system: bool = False,
    ) -> ServiceCredentials:
        ...


def decrypt_credentials(record: Mapping[str, Any]) -> ServiceCredentials:
    """Build credentials from a stored record. Secrets are used as stored."""
    return ServiceCredentials(
        username=record.get("username") or "",
        password=record.get("encrypted_password") or record.get("password") or "",
        domain=record.get("domain"),
        tenant_id=record.get("tenant_id"),
        client_id=record.get("client_id"),
        client_secret=record.get("encrypted_client_secret") or record.get("client_secret"),
    )


class SettingsCredentialProvider(CredentialProvider):
    """System credentials from Settings, per-user credentials from a lookup callable."""

    def __init__(
        self,
        settings: Settings,
        user_lookup: Optional[UserCredentialLookup] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.user_lookup = user_lookup
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.user_credential_ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[ServiceCredentials, float]] = {}
        self._lock = threading.Lock()

    def get_credentials(
        self,
        data_source: DataSource,
        user_id: Optional[str] = None,
        credential_id: Optional[str] = None,
        explicit: Optional[ServiceCredentials] = None,
        use_system: bool = False,
    ) -> ServiceCredentials:
        if explicit is not None:
            return explicit

        if use_system or not user_id:
            return self.get_system_credentials(data_source)

        try:
            credentials = self._get_user_credentials(user_id, data_source, credential_id)
            if credentials is not None:
                return credentials
        except Exception as e:
            logger.warning(
                f"Failed to get user credentials for {data_source.value}, "
                f"falling back to system credentials: {e}"
            )
        return self.get_system_credentials(data_source)

    def _get_user_credentials(
        self,
        user_id: str,
        data_source: DataSource,
        credential_id: Optional[str],
    ) -> Optional[ServiceCredentials]:
        if self.user_lookup is None:
            return None
        cache_key = f"user:{user_id}:{data_source.value}:{credential_id or '-'}"
        cached = self._cached(cache_key)
        if cached is not None:
            return cached

        record = self.user_lookup(user_id, data_source, credential_id)
        if not record:
            return None
        credentials = decrypt_credentials(record)
        self._store(cache_key, credentials)
        return credentials

    def get_system_credentials(self, data_source: DataSource) -> ServiceCredentials:
        cache_key = f"system:{data_source.value}"
        cached = self._cached(cache_key)
        if cached is not None:
            return cached

        s = self.settings
        if data_source == DataSource.DIRECTORY:
            credentials = ServiceCredentials(
                username=s.directory_username or "",
                password=s.directory_password or "",
                domain=s.directory_domain,
            )
            if not credentials.username or not credentials.password:
                raise errors.authentication_failed(
                    data_source.value,
                    "Directory credentials are not configured. Set AD_USERNAME and AD_PASSWORD."
                )
        elif data_source in (DataSource.GRAPH, DataSource.REPORT):
            credentials = ServiceCredentials(
                tenant_id=s.graph_tenant_id,
                client_id=s.graph_client_id,
                client_secret=s.graph_client_secret,
            )
            if not (credentials.tenant_id and credentials.client_id and credentials.client_secret):
                raise errors.authentication_failed(
                    data_source.value,
                    "Graph credentials are not configured. "
                    "Set AZURE_TENANT_ID, AZURE_CLIENT_ID and AZURE_CLIENT_SECRET."
                )
        else:
            raise errors.authentication_failed(
                data_source.value, "No system credentials exist for this data source"
            )

        self._store(cache_key, credentials)
        return credentials

    def invalidate_user(self, user_id: str) -> None:
        with self._lock:
            for key in [k for k in self._cache if k.startswith(f"user:{user_id}:")]:
                del self._cache[key]

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _cached(self, key: str) -> Optional[ServiceCredentials]:
        with self._lock:
            entry = self._cache.get(key)
            if entry and self._clock() - entry[1] < self.ttl_seconds:
                return entry[0]
        return None

    def _store(self, key: str, credentials: ServiceCredentials) -> None:
        with self._lock:
            self._cache[key] = (credentials, self._clock())
