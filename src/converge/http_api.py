"""
Generic HTTP collaborator - RemoteAPI for plain JSON REST endpoints.

Maps create/read/update/delete onto POST/GET/PATCH/DELETE against
``{base_url}/{path}`` and classifies failures from the HTTP status:
404 is NotFound; 408, 409, 429, 5xx and connection errors are Retryable;
any other 4xx is Fatal.
"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from converge.base import InstanceKey
from converge.errors import FatalError, NotFoundError, RetryableError
from converge.remote import CreateResult, Provider, RemoteAPI
from converge.values import Value, values_from_python, values_to_python

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 409, 429}


def classify_status(status: int, message: str) -> Optional[Exception]:
    """Error for an HTTP status, or None for success."""
    if status < 400:
        return None
    if status == 404:
        return NotFoundError(message)
    if status in RETRYABLE_STATUSES or status >= 500:
        return RetryableError(message)
    return FatalError(message)


class HTTPRemoteAPI(RemoteAPI):
    """
    RemoteAPI for one resource type served by a REST endpoint.

    Args:
        type_name: Resource type handled by this collaborator
        base_url: API root, e.g. ``https://api.example.com/v1``
        path: Collection path below the root, e.g. ``buckets``
        id_field: Response field holding the remote id
        pre_delete_path: Optional action path POSTed to before delete
        headers: Extra request headers
        timeout: Total per-request timeout in seconds
    """

    def __init__(
        self,
        type_name: str,
        base_url: str,
        path: str,
        id_field: str = "id",
        pre_delete_path: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ):
        self._type_name = type_name
        self.base_url = base_url.rstrip("/")
        self.path = path.strip("/")
        self.id_field = id_field
        self.pre_delete_path = pre_delete_path
        self.headers = headers or {}
        self.timeout = timeout

    @property
    def type_name(self) -> str:
        return self._type_name

    def _url(self, id: Optional[str] = None, suffix: Optional[str] = None) -> str:
        url = f"{self.base_url}/{self.path}"
        if id is not None:
            url += f"/{id}"
        if suffix:
            url += f"/{suffix.strip('/')}"
        return url

    async def _request(
        self, method: str, url: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Send one request and return the decoded JSON body.

        Raises:
            NotFoundError, RetryableError, FatalError: Classified from the response
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        description = f"{method} {url}"
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self.headers) as session:
                async with session.request(method, url, json=payload) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        error = classify_status(
                            resp.status, f"{description} returned HTTP {resp.status}: {text}"
                        )
                        raise error
                    if resp.status == 204:
                        return {}
                    body = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise RetryableError(f"{description} failed: {e}") from e

        if body is None:
            return {}
        if not isinstance(body, dict):
            raise FatalError(f"{description} returned a non-object body")
        return body

    def _attributes(self, body: Dict[str, Any]) -> Dict[str, Value]:
        return values_from_python({k: v for k, v in body.items() if k != self.id_field})

    async def create(self, key: InstanceKey, attributes: Dict[str, Value]) -> CreateResult:
        body = await self._request("POST", self._url(), values_to_python(attributes))
        if self.id_field not in body:
            raise FatalError(
                f"Create response for {key} has no '{self.id_field}' field", instance=key
            )
        remote_id = str(body[self.id_field])
        logger.debug(f"Created {key} at {self._url(remote_id)}")
        return CreateResult(id=remote_id, attributes=self._attributes(body))

    async def read(self, id: str) -> Dict[str, Value]:
        return self._attributes(await self._request("GET", self._url(id)))

    async def update(self, id: str, changes: Dict[str, Value]) -> Dict[str, Value]:
        body = await self._request("PATCH", self._url(id), values_to_python(changes))
        return self._attributes(body)

    async def delete(self, id: str) -> None:
        await self._request("DELETE", self._url(id))

    async def pre_delete(self, id: str, attributes: Dict[str, Value]) -> None:
        if self.pre_delete_path:
            await self._request("POST", self._url(id, self.pre_delete_path))


def http_provider(config: Dict[str, Any]) -> Provider:
    """
    Entry point factory for the generic HTTP provider.

    Expected configuration::

        {"base_url": "https://api.example.com/v1",
         "headers": {"Authorization": "Bearer ..."},
         "timeout": 30,
         "types": {"bucket": {"path": "buckets", "id_field": "id",
                              "pre_delete_path": "drain"}}}

    Raises:
        ValueError: If ``base_url`` or ``types`` is missing
    """
    if not config.get("base_url"):
        raise ValueError("The http provider requires 'base_url'")
    types = config.get("types")
    if not types:
        raise ValueError("The http provider requires at least one entry in 'types'")

    provider = Provider("http")
    for type_name, type_config in types.items():
        type_config = type_config or {}
        provider.register(
            HTTPRemoteAPI(
                type_name=type_name,
                base_url=type_config.get("base_url", config["base_url"]),
                path=type_config.get("path", type_name),
                id_field=type_config.get("id_field", "id"),
                pre_delete_path=type_config.get("pre_delete_path"),
                headers={**config.get("headers", {}), **type_config.get("headers", {})},
                timeout=float(type_config.get("timeout", config.get("timeout", 30))),
            )
        )
    return provider
