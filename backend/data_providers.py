"""
Data Providers - external placeholder APIs and image fetching

Runs on the Delegate Surface only. Every network call here degrades to a
fallback value (or None for images) instead of raising, so a flaky API never
aborts a bulk apply.
"""

import logging
import random
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlparse

import httpx

from data_types import UNSPLASH_CATEGORIES

logger = logging.getLogger(__name__)

RANDOMUSER_ENDPOINT = "https://randomuser.me/api/"
DUMMYJSON_PRODUCTS_ENDPOINT = "https://dummyjson.com/products"
UNSPLASH_API_BASE = "https://api.unsplash.com"

FALLBACK_AVATAR_URL = "https://api.dicebear.com/7.x/avataaars/png?seed=fallback"
FALLBACK_IMAGE_URL = "https://picsum.photos/400/300?random=1"
FALLBACK_TEXT_VALUE = "Error loading data"

MAX_IMAGE_BYTES = 10 * 1024 * 1024

# ============================================
# ============== CORS RELAY ==================
# ============================================

CORS_PROXIES: Dict[str, Dict[str, str]] = {
    "cloudflare_worker": {"name": "Cloudflare Workers", "url": "https://populator-cors.workers.dev/?url=", "style": "query"},
    "corsproxy_io": {"name": "CorsProxy.io", "url": "https://corsproxy.io/?", "style": "query"},
    "cors_sh": {"name": "Cors.sh", "url": "https://proxy.cors.sh/", "style": "path"},
}

FORWARDABLE_DOMAINS = frozenset({
    "api.dicebear.com",
    "randomuser.me",
    "i.pravatar.cc",
    "api.multiavatar.com",
    "robohash.org",
    "ui-avatars.com",
    "picsum.photos",
    "fastly.picsum.photos",
    "source.unsplash.com",
    "images.unsplash.com",
    "pixabay.com",
    "dummyjson.com",
    "cdn.dummyjson.com",
    "fakestoreapi.com",
    "jsonplaceholder.typicode.com",
})


def is_forwardable(url: str) -> bool:
    """True when the relay's allow-list would forward a request to this URL."""
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and (parsed.hostname or "") in FORWARDABLE_DOMAINS


def build_proxied_url(target_url: str, proxy: Optional[str]) -> str:
    """Route target_url through the named relay; unknown or empty proxy names mean direct."""
    config = CORS_PROXIES.get(proxy or "")
    if config is None or not is_forwardable(target_url):
        return target_url
    if config["style"] == "path":
        return config["url"] + target_url
    return config["url"] + quote(target_url, safe="")


# ============================================
# ========= EXTERNAL DATA PROVIDERS ==========
# ============================================

class ExternalDataProvider:
    """Fetches placeholder values from public APIs with an injected httpx client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        unsplash_access_key: Optional[str] = None,
        cors_proxy: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.client = client
        self.unsplash_access_key = unsplash_access_key
        self.cors_proxy = cors_proxy
        self.rng = rng or random.Random()
        self._handlers: Dict[str, Callable[[int], Any]] = {
            "avatar_randomuser": self._randomuser_avatars,
            "product_dummyjson": self._dummyjson_titles,
            "product_image_dummyjson": self._dummyjson_thumbnails,
        }
        for key, query in UNSPLASH_CATEGORIES.items():
            self._handlers[f"unsplash_{key}"] = self._unsplash_for(query)

    def supports(self, data_type_id: str) -> bool:
        return data_type_id in self._handlers

    async def fetch(self, data_type_id: str, count: int) -> List[str]:
        handler = self._handlers.get(data_type_id)
        if handler is None:
            raise KeyError(data_type_id)
        if count <= 0:
            return []
        return await handler(count)

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self.client.get(build_proxied_url(url, self.cors_proxy), params=params)
        response.raise_for_status()
        return response.json()

    async def _randomuser_avatars(self, count: int) -> List[str]:
        try:
            data = await self._get_json(RANDOMUSER_ENDPOINT, params={"results": count, "inc": "picture"})
            urls = [entry["picture"]["large"] for entry in data["results"]]
            if not urls:
                raise ValueError("empty results")
            return [urls[i % len(urls)] for i in range(count)]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ RandomUser fetch failed, using fallback avatars: {e}")
            return [FALLBACK_AVATAR_URL] * count

    async def _dummyjson_products(self) -> List[Dict[str, Any]]:
        data = await self._get_json(DUMMYJSON_PRODUCTS_ENDPOINT)
        products = data["products"]
        if not products:
            raise ValueError("no products")
        return products

    async def _dummyjson_titles(self, count: int) -> List[str]:
        try:
            products = await self._dummyjson_products()
            return [str(self.rng.choice(products)["title"]) for _ in range(count)]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ DummyJSON fetch failed: {e}")
            return [FALLBACK_TEXT_VALUE] * count

    async def _dummyjson_thumbnails(self, count: int) -> List[str]:
        try:
            products = await self._dummyjson_products()
            return [str(self.rng.choice(products)["thumbnail"]) for _ in range(count)]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ DummyJSON fetch failed: {e}")
            return [FALLBACK_IMAGE_URL] * count

    def _placeholder_images(self, count: int) -> List[str]:
        return [f"https://picsum.photos/400/300?random={self.rng.randint(1, 1000)}" for _ in range(count)]

    def _unsplash_for(self, query: str) -> Callable[[int], Any]:
        async def fetch(count: int) -> List[str]:
            if not self.unsplash_access_key:
                return self._placeholder_images(count)
            try:
                data = await self._get_json(
                    f"{UNSPLASH_API_BASE}/search/photos",
                    params={"query": query, "per_page": max(count, 1), "client_id": self.unsplash_access_key},
                )
                urls = [photo["urls"]["regular"] for photo in data["results"]]
                if not urls:
                    return self._placeholder_images(count)
                return [urls[i % len(urls)] for i in range(count)]
            except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"⚠️ Unsplash search failed, falling back to placeholders: {e}")
                return self._placeholder_images(count)

        return fetch


async def load_image_bytes(client: httpx.AsyncClient, url: str, cors_proxy: Optional[str] = None) -> Optional[bytes]:
    """Download an image; any transport error, non-2xx status or oversized body yields None."""
    chunks = []
    size = 0
    try:
        async with client.stream("GET", build_proxied_url(url, cors_proxy), follow_redirects=True) as response:
            response.raise_for_status()
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > MAX_IMAGE_BYTES:
                logger.warning(f"❌ Image at {url} declares {declared} bytes, over the {MAX_IMAGE_BYTES} byte limit")
                return None
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > MAX_IMAGE_BYTES:
                    logger.warning(f"❌ Image at {url} passed the {MAX_IMAGE_BYTES} byte limit; stopped reading")
                    return None
                chunks.append(chunk)
    except httpx.HTTPError as e:
        logger.warning(f"❌ Image loading failed for {url}: {e}")
        return None
    if not size:
        logger.warning(f"❌ Image at {url} was empty")
        return None
    return b"".join(chunks)
