"""
Search Indexer — 検索サービスへの再インデックス依頼
"""

import logging

import httpx

logger = logging.getLogger(__name__)


class HttpSearchIndexer:
    def __init__(self, base_url: str | None, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.client = client or httpx.AsyncClient(timeout=10.0)

    async def index_product(self, product_id: str) -> None:
        if self.base_url is None:
            logger.debug("Search service not configured, skipping index of %s", product_id)
            return
        resp = await self.client.post(f"{self.base_url}/index/products/{product_id}")
        resp.raise_for_status()
        logger.debug("Product %s re-indexed", product_id)

    async def aclose(self) -> None:
        await self.client.aclose()
