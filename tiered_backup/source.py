"""
Data source adapters.

The backup core only needs two things from a store: every row of a dataset,
in stable order, and (for the verifier) the live row count. ``SourceAdapter``
is that contract; ``SupabaseSource`` implements it over the PostgREST API.

Credentials:
    SUPABASE_URL (or NEXT_PUBLIC_SUPABASE_URL)
    SUPABASE_SERVICE_ROLE_KEY
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from .registry import DatasetRegistry, DatasetSpec

logger = logging.getLogger(__name__)


REQUEST_TIMEOUT = 30
DEFAULT_PAGE_SIZE = 1000


class SourceUnavailable(Exception):
    """Raised when a dataset cannot be read from the store."""
    def __init__(self, dataset: str, message: str, original_error: Optional[Exception] = None):
        self.dataset = dataset
        self.message = message
        self.original_error = original_error
        super().__init__(f"{dataset}: {message}")


class MissingCredentialsError(Exception):
    """Raised when the store URL or service key is not configured."""
    pass


class SourceAdapter(ABC):
    """Read-only access to the registered datasets."""

    def __init__(self, registry: Optional[DatasetRegistry] = None):
        self.registry = registry or DatasetRegistry()

    def dataset(self, name: str) -> DatasetSpec:
        spec = self.registry.get(name)
        if spec is None:
            raise SourceUnavailable(name, "dataset is not registered")
        return spec

    @abstractmethod
    def fetch_dataset(self, name: str) -> List[Dict[str, Any]]:
        """
        Fetch every record of a dataset, ordered by its stable key.

        Raises:
            SourceUnavailable: If the store cannot be reached
        """
        pass

    def count_dataset(self, name: str) -> int:
        """Live record count. Subclasses may override with a cheaper query."""
        return len(self.fetch_dataset(name))


def get_supabase_credentials() -> Dict[str, str]:
    """
    Read store credentials from the environment.

    Raises:
        MissingCredentialsError: If either value is unset
    """
    url = (os.environ.get("SUPABASE_URL") or os.environ.get("NEXT_PUBLIC_SUPABASE_URL") or "").strip()
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "").strip()
    if not url or not key:
        raise MissingCredentialsError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set. "
            "Copy .env.example to .env and fill them in."
        )
    return {"url": url.rstrip("/"), "key": key}


class SupabaseSource(SourceAdapter):
    """PostgREST client for a Supabase project."""

    def __init__(
        self,
        url: str,
        service_key: str,
        registry: Optional[DatasetRegistry] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float = REQUEST_TIMEOUT,
    ):
        super().__init__(registry)
        self.base_url = url.rstrip("/")
        self.service_key = service_key
        self.page_size = page_size
        self.timeout = timeout

    @classmethod
    def from_env(cls, registry: Optional[DatasetRegistry] = None, **kwargs) -> "SupabaseSource":
        creds = get_supabase_credentials()
        return cls(creds["url"], creds["key"], registry=registry, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Accept": "application/json",
        }

    def _table_url(self, spec: DatasetSpec) -> str:
        return f"{self.base_url}/rest/v1/{spec.table}"

    def fetch_dataset(self, name: str) -> List[Dict[str, Any]]:
        spec = self.dataset(name)
        records: List[Dict[str, Any]] = []
        offset = 0

        while True:
            params = {
                "select": "*",
                "order": f"{spec.order_by}.asc",
                "limit": self.page_size,
                "offset": offset,
            }
            try:
                resp = requests.get(
                    self._table_url(spec),
                    params=params,
                    headers=self._headers(),
                    timeout=self.timeout,
                )
                resp.raise_for_status()
                page = resp.json()
            except requests.RequestException as e:
                raise SourceUnavailable(name, f"request failed: {e}", e)
            except ValueError as e:
                raise SourceUnavailable(name, f"invalid JSON response: {e}", e)

            if not isinstance(page, list):
                raise SourceUnavailable(name, f"expected a list of rows, got {type(page).__name__}")

            records.extend(page)
            if len(page) < self.page_size:
                break
            offset += self.page_size

        logger.debug(f"Fetched {len(records)} rows from {spec.table}")
        return records

    def count_dataset(self, name: str) -> int:
        spec = self.dataset(name)
        headers = self._headers()
        headers["Prefer"] = "count=exact"
        try:
            resp = requests.head(
                self._table_url(spec),
                params={"select": "*"},
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SourceUnavailable(name, f"count request failed: {e}", e)

        # Content-Range: 0-146/147 (or */0 when empty)
        content_range = resp.headers.get("Content-Range", "")
        total = content_range.rsplit("/", 1)[-1] if "/" in content_range else ""
        if not total.isdigit():
            raise SourceUnavailable(name, f"unparsable Content-Range: {content_range!r}")
        return int(total)


def build_source(config) -> SupabaseSource:
    """Build the configured source from a BackupConfig and the environment."""
    return SupabaseSource.from_env(
        registry=config.registry,
        page_size=config.source.page_size,
        timeout=config.source.timeout_seconds,
    )
