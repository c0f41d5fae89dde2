import json
import logging

from typing import Any, Dict, Iterable, List, Optional

import aiohttp
from urllib3 import PoolManager, Timeout
from urllib3.exceptions import HTTPError

from ..cache_interfaces import AbstractSegmentsCache
from ..common_types import SegmentOption, translate_options
from ..errors import FetchSegmentsFailedError, InvalidSegmentIdentifierError
from .lru_cache import LRUCache
from .odp_config import OdpConfig

logger = logging.getLogger("splitflag.odp.segment_manager")

GRAPHQL_PATH = "/v3/graphql"
API_KEY_HEADER = "x-api-key"
FS_USER_ID = "fs_user_id"
CACHE_KEY_SEPARATOR = "-$-"
INVALID_IDENTIFIER_CODE = "INVALID_IDENTIFIER_EXCEPTION"
QUALIFIED_STATE = "qualified"

DEFAULT_SEGMENTS_CACHE_SIZE = 10000
DEFAULT_SEGMENTS_CACHE_TIMEOUT = 600
DEFAULT_REQUEST_TIMEOUT = 10.0


def _extract(path: str, data: Any) -> Any:
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class SegmentAPIManager(object):
    """Queries the ODP GraphQL endpoint for the segments a user qualifies for."""

    def __init__(self, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        self.timeout = timeout
        self.http: Optional[PoolManager] = None

    @staticmethod
    def build_query(user_id: str, segments_to_check: List[str]) -> Dict[str, Any]:
        return {
            "query": (
                "query($userId: String, $audiences: [String]) "
                "{customer(%s: $userId) {audiences(subset: $audiences) {edges {node {name state}}}}}" % FS_USER_ID
            ),
            "variables": {"userId": user_id, "audiences": list(segments_to_check)},
        }

    @staticmethod
    def build_headers(api_key: str) -> Dict[str, str]:
        return {"Content-Type": "application/json", API_KEY_HEADER: api_key}

    # Perform the POST request (separate method for easy mocking)
    def _post(self, url: str, body: bytes, headers: Dict[str, str]):
        self.http = self.http or PoolManager(timeout=Timeout(total=self.timeout))
        return self.http.request("POST", url, body=body, headers=headers)

    def fetch_segments(self, api_key: str, api_host: str, user_id: str, segments_to_check: List[str]) -> List[str]:
        url = api_host.rstrip("/") + GRAPHQL_PATH
        body = json.dumps(self.build_query(user_id, segments_to_check)).encode("utf-8")
        try:
            r = self._post(url, body, self.build_headers(api_key))
        except HTTPError as e:
            raise FetchSegmentsFailedError("network error") from e

        if r.status >= 400:
            raise FetchSegmentsFailedError(str(r.status))
        try:
            decoded = json.loads(r.data.decode("utf-8"))
        except ValueError as e:
            raise FetchSegmentsFailedError("decode error") from e
        return self.parse_response(decoded)

    async def fetch_segments_async(
        self, api_key: str, api_host: str, user_id: str, segments_to_check: List[str]
    ) -> List[str]:
        url = api_host.rstrip("/") + GRAPHQL_PATH
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    url, json=self.build_query(user_id, segments_to_check), headers=self.build_headers(api_key)
                ) as response:
                    if response.status >= 400:
                        raise FetchSegmentsFailedError(str(response.status))
                    decoded = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise FetchSegmentsFailedError("network error") from e
        except ValueError as e:
            raise FetchSegmentsFailedError("decode error") from e
        return self.parse_response(decoded)

    @staticmethod
    def parse_response(decoded: Any) -> List[str]:
        if not isinstance(decoded, dict):
            raise FetchSegmentsFailedError("decode error")

        errors = decoded.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) else None
            classification = _extract("extensions.classification", first)
            if _extract("extensions.code", first) == INVALID_IDENTIFIER_CODE:
                raise InvalidSegmentIdentifierError()
            if isinstance(classification, str):
                raise FetchSegmentsFailedError(classification)
            raise FetchSegmentsFailedError("decode error")

        edges = _extract("data.customer.audiences.edges", decoded)
        if not isinstance(edges, list):
            raise FetchSegmentsFailedError("decode error")

        segments = []
        for edge in edges:
            node = _extract("node", edge)
            if not isinstance(node, dict):
                continue
            if node.get("state") == QUALIFIED_STATE and isinstance(node.get("name"), str):
                segments.append(node["name"])
        return segments


class SegmentManager(object):
    """Cache-fronted access to the qualified segments of a user."""

    def __init__(
        self,
        odp_config: OdpConfig,
        segments_cache: Optional[AbstractSegmentsCache] = None,
        api_manager: Optional[SegmentAPIManager] = None,
    ) -> None:
        self.odp_config = odp_config
        self.segments_cache = segments_cache or LRUCache(DEFAULT_SEGMENTS_CACHE_SIZE, DEFAULT_SEGMENTS_CACHE_TIMEOUT)
        self.api_manager = api_manager or SegmentAPIManager()

    @staticmethod
    def make_cache_key(user_key: str, user_value: str) -> str:
        return user_key + CACHE_KEY_SEPARATOR + user_value

    def reset(self) -> None:
        self.segments_cache.reset()

    def _prepare(self, user_id: str, options: Optional[Iterable]):
        api_key = self.odp_config.get_api_key()
        api_host = self.odp_config.get_api_host()
        if not (api_key and api_host):
            raise FetchSegmentsFailedError("apiKey/apiHost not defined")

        segments_to_check = self.odp_config.get_segments_to_check()
        options = translate_options(options, SegmentOption)
        cache_key = self.make_cache_key(FS_USER_ID, user_id)

        if SegmentOption.RESET_CACHE in options:
            self.reset()
        return api_key, api_host, segments_to_check, options, cache_key

    def fetch_qualified_segments(self, user_id: str, options: Optional[Iterable] = None) -> List[str]:
        api_key, api_host, segments_to_check, options, cache_key = self._prepare(user_id, options)
        if not segments_to_check:
            logger.debug("No segments are used in the project, skipping fetch")
            return []

        ignore_cache = SegmentOption.IGNORE_CACHE in options
        if not ignore_cache:
            cached = self.segments_cache.lookup(cache_key)
            if cached is not None:
                logger.debug("ODP cache hit for %s", user_id)
                return list(cached)

        logger.debug("ODP cache miss for %s, making a call to ODP server", user_id)
        segments = self.api_manager.fetch_segments(api_key, api_host, user_id, segments_to_check)
        if not ignore_cache and segments:
            self.segments_cache.save(cache_key, segments)
        return segments

    async def fetch_qualified_segments_async(self, user_id: str, options: Optional[Iterable] = None) -> List[str]:
        api_key, api_host, segments_to_check, options, cache_key = self._prepare(user_id, options)
        if not segments_to_check:
            return []

        ignore_cache = SegmentOption.IGNORE_CACHE in options
        if not ignore_cache:
            cached = self.segments_cache.lookup(cache_key)
            if cached is not None:
                return list(cached)

        segments = await self.api_manager.fetch_segments_async(api_key, api_host, user_id, segments_to_check)
        if not ignore_cache and segments:
            self.segments_cache.save(cache_key, segments)
        return segments
