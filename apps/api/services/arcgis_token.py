# ArcGIS Enterprise トークン発行とキャッシュ（generateToken → token/expires/ssl）

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx

from schemas import Credential
from services.errors import CredentialError, UpstreamTimeout
from settings import settings

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def expires_at_iso(expires: int) -> str:
    dt = datetime.fromtimestamp(expires / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TokenManager:
    """
    Holds one ArcGIS credential for the whole process.

    The cached token is handed out while at least ``refresh_threshold_sec``
    remain before expiry; otherwise a new one is generated first.
    Regeneration runs under a lock, so concurrent callers on a cache miss
    wait for the single in-flight request and then reuse its result.
    """

    def __init__(
        self,
        portal_url: Optional[str],
        username: Optional[str],
        password: Optional[str],
        referer: str = "http://localhost:3000",
        expiration_minutes: int = 60,
        refresh_threshold_sec: int = 300,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.portal_url = portal_url.rstrip("/") if portal_url else None
        self.username = username
        self.password = password
        self.referer = referer
        self.expiration_minutes = expiration_minutes
        self.refresh_threshold_ms = refresh_threshold_sec * 1000
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._cached: Optional[Credential] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, **overrides) -> "TokenManager":
        kwargs = dict(
            portal_url=settings.ARCGIS_PORTAL_URL,
            username=settings.ARCGIS_USERNAME,
            password=settings.ARCGIS_PASSWORD,
            referer=settings.REFERER,
            expiration_minutes=settings.ARCGIS_TOKEN_EXPIRATION_MINUTES,
            refresh_threshold_sec=settings.ARCGIS_TOKEN_REFRESH_THRESHOLD_SEC,
            timeout=settings.ARCGIS_HTTP_TIMEOUT,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def token_url(self) -> str:
        return f"{self.portal_url}/sharing/rest/generateToken"

    @property
    def cached(self) -> Optional[Credential]:
        return self._cached

    def is_expired(self, credential: Credential) -> bool:
        return credential.expires - self._clock() < self.refresh_threshold_ms

    async def get_valid_token(self) -> Credential:
        cached = self._cached
        if cached is not None and not self.is_expired(cached):
            logger.debug("Using cached ArcGIS token")
            return cached

        async with self._lock:
            # 待っている間に別リクエストが再発行済みならそれを使う
            cached = self._cached
            if cached is not None and not self.is_expired(cached):
                return cached

            logger.info("Generating new ArcGIS token")
            credential = await self.generate_token()
            self._cached = credential
            logger.info("New ArcGIS token generated, expires at: %s", expires_at_iso(credential.expires))
            return credential

    def invalidate_token(self) -> None:
        self._cached = None
        logger.info("ArcGIS token cache cleared")

    async def generate_token(self) -> Credential:
        if not (self.portal_url and self.username and self.password):
            raise CredentialError(
                "Missing ArcGIS Enterprise credentials. Please set ARCGIS_PORTAL_URL, "
                "ARCGIS_USERNAME, and ARCGIS_PASSWORD in your environment variables."
            )

        form = {
            "username": self.username,
            "password": self.password,
            "referer": self.referer,
            "f": "json",
            "expiration": str(self.expiration_minutes),
            "client": "referer",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as c:
                r = await c.post(self.token_url, data=form)
        except httpx.TimeoutException as e:
            logger.error("ArcGIS token request timed out: %s", e)
            raise UpstreamTimeout("ArcGIS token request timed out", {"kind": "timeout"}) from e
        except httpx.HTTPError as e:
            logger.error("ArcGIS token request error: %s", e)
            raise CredentialError(f"ArcGIS token request error: {e}") from e

        if not r.is_success:
            raise CredentialError(
                f"HTTP error! status: {r.status_code}",
                {"status": r.status_code, "text": r.text[:500]},
            )

        try:
            j = r.json()
        except ValueError as e:
            raise CredentialError(f"Invalid token response from ArcGIS Enterprise: {e}")

        if not isinstance(j, dict):
            raise CredentialError("Invalid token response from ArcGIS Enterprise")

        error = j.get("error")
        if error and not isinstance(error, dict):
            raise CredentialError(f"ArcGIS Token Error: {error}")
        if error:
            raise CredentialError(
                f"ArcGIS Token Error: {error.get('message')} (Code: {error.get('code')})",
                {"details": error.get("details")},
            )

        token = j.get("token")
        expires = j.get("expires")
        if not token or not expires:
            raise CredentialError("Invalid token response from ArcGIS Enterprise")
        try:
            expires_ms = int(expires)
        except (TypeError, ValueError):
            raise CredentialError("Invalid token response from ArcGIS Enterprise", {"expires": expires})

        return Credential(token=str(token), expires=expires_ms, ssl=bool(j.get("ssl") or False))
