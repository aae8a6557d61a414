from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import aiohttp

from cirrus.observability.logger import logger

# ─── Errors ──────────────────────────────────────────────────────────


class HttpError(Exception):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(status, body)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    async def headers(self) -> dict[str, str]: ...


class BearerAuth:
    def __init__(self, token: str) -> None:
        self._token = token

    async def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    """JSON-over-HTTP client with a lazily created session."""

    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 30,
        ssl: bool = True,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._ssl = ssl
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
    ) -> Any:
        session = await self._ensure_session()
        headers = {"Accept": "application/json"}
        if self._auth:
            headers.update(await self._auth.headers())
        self._log.debug("{method} {url}", method=method, url=self._url(path))

        try:
            async with session.request(
                method, self._url(path), headers=headers, json=json, ssl=self._ssl,
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self._log.warning(
                        "HTTP {status} from {url}: {body}",
                        status=resp.status, url=str(resp.url), body=body[:500],
                    )
                    raise HttpError(status=resp.status, body=body)
                body = await resp.read()
                return await resp.json() if body else None
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except aiohttp.ClientError as e:
            raise HttpError(status=0, body=str(e)) from e

    async def get(self, path: str) -> Any:
        return await self.request("GET", path)

    async def post(self, path: str, *, json: dict[str, Any] | list[Any] | None = None) -> Any:
        return await self.request("POST", path, json=json)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()
