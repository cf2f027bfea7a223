"""
REST Resource Manager - Generic manager for JSON REST collections.

Drives a resource exposed as ``{url}/{id}`` where PUT creates or replaces
it, GET reads it and DELETE removes it. Usable directly for simple APIs
and as the reference implementation of the resource manager contract.
"""

import logging
import os
from typing import Any, Dict, Optional

import aiohttp

from managers.base import (
    ApplyResponse,
    ApplyResult,
    DeleteResponse,
    DeleteResult,
    ResourceManager,
    TransientError,
    VerifyResponse,
    VerifyResult,
)

logger = logging.getLogger(__name__)

SPEC_SCHEMA = {
    "type": "object",
    "required": ["url", "id", "body"],
    "properties": {
        "url": {"type": "string", "minLength": 1},
        "id": {"type": ["string", "integer"]},
        "body": {"type": "object"},
        "headers": {"type": "object", "additionalProperties": {"type": "string"}},
    },
}


# Client errors that ask the caller to try again later
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def is_retryable(status: int) -> bool:
    return status >= 500 or status in RETRYABLE_CLIENT_STATUSES

def is_subset(desired: Any, actual: Any) -> bool:
    """
    Whether ``actual`` contains everything in ``desired``.

    Dicts are compared key by key (extra keys in ``actual`` are allowed,
    since servers commonly add fields); everything else by equality.
    """
    if isinstance(desired, dict):
        if not isinstance(actual, dict):
            return False
        return all(
            key in actual and is_subset(value, actual[key])
            for key, value in desired.items()
        )
    return desired == actual


class RestResourceManager(ResourceManager):
    """Resource manager for a single-object JSON REST endpoint."""

    def __init__(self):
        self.token: Optional[str] = None
        self.timeout: int = 30

    @property
    def kind(self) -> str:
        return "RestResource"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def spec_schema(self) -> Dict[str, Any]:
        return SPEC_SCHEMA

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load REST manager configuration from environment variables."""
        return {
            "token": os.getenv("REST_MANAGER_TOKEN", ""),
            "timeout": int(os.getenv("REST_MANAGER_TIMEOUT", "30")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the manager with configuration."""
        self.token = config.get("token") or None
        self.timeout = config.get("timeout", self.timeout)
        logger.debug(f"REST resource manager initialized: timeout={self.timeout}s")

    # Private helper methods

    def _get_headers(self, spec: Dict[str, Any]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        headers.update(spec.get("headers") or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _object_url(self, spec: Dict[str, Any]) -> str:
        return f"{spec['url'].rstrip('/')}/{spec['id']}"

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )

    async def _put(self, spec: Dict[str, Any]) -> ApplyResponse:
        url = self._object_url(spec)
        try:
            async with self._session() as session:
                async with session.put(
                    url, headers=self._get_headers(spec), json=spec["body"]
                ) as response:
                    if is_retryable(response.status):
                        raise TransientError(f"PUT {url} returned HTTP {response.status}")
                    if response.status >= 400:
                        text = await response.text()
                        return ApplyResponse(
                            result=ApplyResult.ERROR,
                            error=f"PUT {url} rejected with HTTP {response.status}: {text}",
                        )
                    etag = response.headers.get("ETag")
        except aiohttp.ClientError as e:
            raise TransientError(f"PUT {url} failed: {e}") from e

        return ApplyResponse(
            result=ApplyResult.AWAITING_VERIFICATION,
            token={"etag": etag} if etag else None,
        )

    # ResourceManager interface

    async def create(self, spec: Dict[str, Any]) -> ApplyResponse:
        """Create (or replace) the object with an idempotent PUT."""
        return await self._put(spec)

    async def update(self, spec: Dict[str, Any]) -> ApplyResponse:
        """Replace the object with the desired body."""
        return await self._put(spec)

    async def verify(self, spec: Dict[str, Any], token: Any) -> VerifyResponse:
        """Read the object and compare it with the desired body."""
        url = self._object_url(spec)
        try:
            async with self._session() as session:
                async with session.get(url, headers=self._get_headers(spec)) as response:
                    if response.status == 404:
                        return VerifyResponse(result=VerifyResult.MISSING)
                    if is_retryable(response.status):
                        raise TransientError(f"GET {url} returned HTTP {response.status}")
                    if response.status >= 400:
                        text = await response.text()
                        return VerifyResponse(
                            result=VerifyResult.ERROR,
                            token=token,
                            error=f"GET {url} rejected with HTTP {response.status}: {text}",
                        )
                    observed = await response.json()
                    etag = response.headers.get("ETag")
        except aiohttp.ClientError as e:
            raise TransientError(f"GET {url} failed: {e}") from e

        new_token = {"etag": etag} if etag else token

        observed_status = observed.get("status") if isinstance(observed, dict) else None
        if observed_status == "deleting":
            return VerifyResponse(result=VerifyResult.DELETING, token=new_token)
        if observed_status == "pending":
            return VerifyResponse(result=VerifyResult.IN_PROGRESS, token=new_token)

        if is_subset(spec["body"], observed):
            return VerifyResponse(result=VerifyResult.READY, token=new_token)
        return VerifyResponse(result=VerifyResult.UPDATE_REQUIRED, token=new_token)

    async def delete(self, spec: Dict[str, Any]) -> DeleteResponse:
        """Delete the object; an object that is already gone counts as deleted."""
        url = self._object_url(spec)
        try:
            async with self._session() as session:
                async with session.delete(
                    url, headers=self._get_headers(spec)
                ) as response:
                    if response.status == 404:
                        logger.info(f"DELETE {url}: already gone")
                        return DeleteResponse(result=DeleteResult.SUCCEEDED)
                    if response.status == 202:
                        return DeleteResponse(result=DeleteResult.IN_PROGRESS)
                    if is_retryable(response.status):
                        raise TransientError(
                            f"DELETE {url} returned HTTP {response.status}"
                        )
                    if response.status >= 400:
                        text = await response.text()
                        return DeleteResponse(
                            result=DeleteResult.ERROR,
                            error=f"DELETE {url} rejected with HTTP {response.status}: {text}",
                        )
        except aiohttp.ClientError as e:
            raise TransientError(f"DELETE {url} failed: {e}") from e

        return DeleteResponse(result=DeleteResult.SUCCEEDED)
