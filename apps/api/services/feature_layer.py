# apps/api/services/feature_layer.py
import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from gis.payloads import to_query_params
from schemas import QuerySpec
from services.arcgis_token import TokenManager
from services.errors import CredentialError, UpstreamError, UpstreamTimeout
from settings import settings

logger = logging.getLogger(__name__)

# 498: invalid token / 499: token required
TOKEN_ERROR_CODES = (498, 499)


class FeatureLayerClient:
    """
    Issues ``/query`` requests against ArcGIS feature/map service layers.

    Network errors, timeouts and 5xx responses are retried ``retries`` times
    with a linear backoff. An embedded token error drops the cached token
    and repeats the request once with a fresh one.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        server_url: str,
        timeout: float = 20.0,
        retries: int = 1,
        backoff_sec: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token_manager = token_manager
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self.retries = max(0, retries)
        self.backoff_sec = backoff_sec
        self._transport = transport

    @classmethod
    def from_settings(cls, token_manager: TokenManager, **overrides) -> "FeatureLayerClient":
        kwargs = dict(
            server_url=settings.ARCGIS_SERVER_URL,
            timeout=settings.ARCGIS_HTTP_TIMEOUT,
            retries=settings.ARCGIS_QUERY_RETRIES,
            backoff_sec=settings.ARCGIS_RETRY_BACKOFF_SEC,
        )
        kwargs.update(overrides)
        return cls(token_manager, **kwargs)

    def layer_url(self, layer: str) -> str:
        return f"{self.server_url}/{layer.strip('/')}/query"

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, **kwargs)

    async def _fetch_json(self, url: str, params: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with self._client() as c:
                r = await c.get(url, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"ArcGIS request timed out: {url}", {"transient": True, "kind": "timeout"}) from e
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"ArcGIS request error: {str(e) or repr(e)}",
                {"transient": True, "exception_type": e.__class__.__name__},
            ) from e

        if not r.is_success:
            raise UpstreamError(
                f"ArcGIS request failed: {r.status_code} {r.reason_phrase} - {r.text[:500]}",
                {"transient": r.status_code >= 500, "status": r.status_code},
            )

        try:
            data = r.json()
        except ValueError:
            raise UpstreamError("ArcGIS returned a non-JSON body", {"raw": r.text[:200]})
        if not isinstance(data, dict):
            raise UpstreamError("ArcGIS returned an unexpected body", {"raw": r.text[:200]})
        return data

    async def query(self, layer: str, spec: QuerySpec) -> Dict[str, Any]:
        url = self.layer_url(layer)
        attempt = 0
        token_refreshed = False

        while True:
            credential = await self.token_manager.get_valid_token()
            params = to_query_params(spec, credential.token)
            logger.debug("ArcGIS query %s where=%s", url, spec.where)

            try:
                data = await self._fetch_json(url, params)
            except UpstreamError as e:
                if e.detail.get("transient") and attempt < self.retries:
                    attempt += 1
                    logger.warning("ArcGIS query failed (%s), retry %d/%d", e.message, attempt, self.retries)
                    await asyncio.sleep(self.backoff_sec * attempt)
                    continue
                logger.error("ArcGIS query failed: %s", e.message)
                raise

            error = data.get("error")
            if not error:
                return data

            code = error.get("code") if isinstance(error, dict) else None
            message = (error.get("message") if isinstance(error, dict) else None) or "Unknown error"
            if code in TOKEN_ERROR_CODES and not token_refreshed:
                logger.warning("ArcGIS rejected the token (code %s), regenerating", code)
                token_refreshed = True
                self.token_manager.invalidate_token()
                continue

            logger.error("ArcGIS error for %s: %s (code: %s)", url, message, code)
            raise UpstreamError(f"ArcGIS error: {message} (code: {code})", {"error": error}, code=code)

    async def query_features(self, layer: str, spec: QuerySpec) -> List[Dict[str, Any]]:
        data = await self.query(layer, spec)
        features = data.get("features") or []
        logger.debug("Features count: %d", len(features))
        return features

    async def proxy(
        self,
        path: str,
        params: Mapping[str, str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        """Forward a GET to the portal with the current token attached."""
        portal_url = self.token_manager.portal_url
        if not portal_url:
            raise CredentialError("ARCGIS_PORTAL_URL is not configured")

        credential = await self.token_manager.get_valid_token()
        forwarded = {k: v for k, v in params.items() if k != "path"}
        forwarded["token"] = credential.token
        forwarded["redirect"] = "false"

        url = f"{portal_url}/{path.lstrip('/')}"
        try:
            async with self._client(follow_redirects=True) as c:
                return await c.get(url, params=forwarded, headers=dict(headers or {}))
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"ArcGIS portal request timed out: {path}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"ArcGIS portal request error: {str(e) or repr(e)}") from e
