"""
Thin async client for the Shopify REST Admin API.

One request per call, bounded timeout, no retry: callers decide what a failure means.
Non-2xx responses and transport failures both surface as ExternalApiError.
"""
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from app.config import ShopifyApiConfig
from app.services.errors import ExternalApiError

logger = logging.getLogger(__name__)

PAGE_LIMIT = 250

_LINK_NEXT = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?', re.IGNORECASE)


def _parse_link_next(link_header: Optional[str]) -> Optional[str]:
    """Parse Link header; return URL for rel=next if present. Shopify uses cursor pagination."""
    if not link_header:
        return None
    # Format: <url>; rel="previous", <url>; rel="next"
    for part in link_header.split(","):
        match = _LINK_NEXT.search(part.strip())
        if match:
            return match.group(1).strip()
    return None


def _log_shopify_response(method: str, url: str, status: int, body_preview: str = "") -> None:
    """Log every Shopify API call. Never logs headers (access token)."""
    if status >= 400:
        logger.warning("Shopify API %s %s -> %s %s", method, url, status, body_preview[:200] if body_preview else "")
    else:
        logger.debug("Shopify API %s %s -> %s", method, url, status)


class ShopifyClient:
    """Shopify Admin API calls for a single app configuration."""

    def __init__(self, config: ShopifyApiConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    def api_url(self, shop: str, path: str) -> str:
        return f"https://{shop}/admin/api/{self.config.api_version}/{path.lstrip('/')}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    @staticmethod
    def _headers(access_token: str) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> httpx.Response:
        try:
            response = await client.request(method, url, headers=headers, json=body, params=params)
        except httpx.TimeoutException as e:
            logger.warning("Shopify API %s %s timed out: %s", method, url, e)
            raise ExternalApiError(0, f"timeout: {e}", path=url)
        except httpx.RequestError as e:
            logger.warning("Shopify API %s %s failed: %s", method, url, e)
            raise ExternalApiError(0, str(e), path=url)

        _log_shopify_response(method, url, response.status_code, response.text[:300] if response.text else "")
        if response.status_code < 200 or response.status_code >= 300:
            raise ExternalApiError(response.status_code, response.text or "", path=url)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise ExternalApiError(response.status_code, "invalid JSON in response", path=str(response.url))

    async def request(
        self,
        shop: str,
        access_token: str,
        path: str,
        method: str = "GET",
        body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Dict[str, Any]:
        """Call `path` under /admin/api/{version}/ and return the decoded JSON body."""
        url = self.api_url(shop, path)
        async with self._client() as client:
            response = await self._send(client, method.upper(), url, self._headers(access_token), body, params)
        return self._json(response)

    async def paginate(
        self,
        shop: str,
        access_token: str,
        path: str,
        key: str,
        params: Optional[dict] = None,
    ) -> AsyncIterator[List[dict]]:
        """
        Yield each page's `key` list, following Link rel=next until exhausted.
        Stops after config.max_pages pages so a misbehaving cursor cannot loop forever.
        """
        url = self.api_url(shop, path)
        page_params: Optional[dict] = {"limit": PAGE_LIMIT, **(params or {})}
        headers = self._headers(access_token)
        page = 0
        async with self._client() as client:
            while url:
                if page >= self.config.max_pages:
                    logger.warning(
                        "Shopify %s pagination for %s stopped at max_pages=%s; results may be incomplete",
                        key, shop, self.config.max_pages,
                    )
                    return
                page += 1
                response = await self._send(client, "GET", url, headers, params=page_params)
                items = self._json(response).get(key) or []
                logger.debug("Shopify %s page %s: got %s", key, page, len(items))
                yield items
                url = _parse_link_next(response.headers.get("link"))
                page_params = None  # page_info URL already carries its params

    async def exchange_code(self, shop: str, code: str) -> Dict[str, Any]:
        """Exchange an OAuth authorization code for an offline access token."""
        url = f"https://{shop}/admin/oauth/access_token"
        payload = {
            "client_id": self.config.api_key,
            "client_secret": self.config.api_secret,
            "code": code,
        }
        async with self._client() as client:
            response = await self._send(client, "POST", url, {"Content-Type": "application/json"}, body=payload)
        logger.info("Exchanged OAuth code for token for shop: %s", shop)
        return self._json(response)
