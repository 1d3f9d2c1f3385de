"""
interview_billing/features/evaluation/client.py

Async client for the external AI evaluation service.

Calls are bounded by explicit timeouts. A timeout surfaces as
UpstreamTimeoutError, any other transport or HTTP failure as UpstreamError.
Results are cached per (operation, owner, session) in an injected TTLCache.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from interview_billing.core.cache import TTLCache
from interview_billing.core.config import settings
from interview_billing.core.errors import UpstreamError, UpstreamTimeoutError

logger = logging.getLogger("interview_billing")

FINAL_EVALUATION_PATH = "/evaluate/final"
DETAILED_ANALYSIS_PATH = "/evaluate/detailed"


class EvaluationClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        cache: Optional[TTLCache] = None,
        final_timeout: Optional[float] = None,
        detailed_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.EVALUATION_API_URL or "").rstrip("/")
        self.cache = cache or TTLCache(
            max_entries=settings.ANALYSIS_CACHE_MAX_ENTRIES,
            ttl_seconds=settings.ANALYSIS_CACHE_TTL_SECONDS,
        )
        self.final_timeout = final_timeout or settings.EVALUATION_TIMEOUT_SECONDS
        self.detailed_timeout = detailed_timeout or settings.DETAILED_ANALYSIS_TIMEOUT_SECONDS
        self._transport = transport

    async def _post(self, path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        if not self.base_url:
            raise UpstreamError("Evaluation service is not configured")
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport) as client:
                response = await client.post(path, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as exc:
            logger.warning("[evaluation] timeout", extra={"path": path, "timeout": timeout})
            raise UpstreamTimeoutError(f"Evaluation service timed out after {timeout:.0f}s") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "[evaluation] upstream error",
                extra={"path": path, "status": exc.response.status_code},
            )
            raise UpstreamError(f"Evaluation service returned {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[evaluation] request failed", extra={"path": path, "error": str(exc)})
            raise UpstreamError("Evaluation service request failed") from exc

    def cached(self, operation: str, session_id: str, owner: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self.cache.get((operation, owner, session_id))

    def cached_detailed_analysis(self, session_id: str, owner: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self.cached("detailed_analysis", session_id, owner)

    async def _cached_call(
        self,
        operation: str,
        path: str,
        session_id: str,
        transcript: Any,
        options: Optional[Dict[str, Any]],
        timeout: float,
        owner: Optional[str],
    ) -> Dict[str, Any]:
        cached = self.cached(operation, session_id, owner)
        if cached is not None:
            logger.info("[evaluation] cache hit", extra={"operation": operation, "session_id": session_id})
            return cached
        payload = {"session_id": session_id, "transcript": transcript, "options": dict(options or {})}
        result = await self._post(path, payload, timeout)
        self.cache.set((operation, owner, session_id), result)
        return result

    async def final_evaluation(
        self,
        session_id: str,
        transcript: Any,
        options: Optional[Dict[str, Any]] = None,
        owner: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._cached_call(
            "final_evaluation", FINAL_EVALUATION_PATH, session_id, transcript, options, self.final_timeout, owner
        )

    async def detailed_analysis(
        self,
        session_id: str,
        transcript: Any,
        options: Optional[Dict[str, Any]] = None,
        owner: Optional[str] = None,
    ) -> Dict[str, Any]:
        """``owner`` scopes the cache entry so one caller never reads another's result."""
        return await self._cached_call(
            "detailed_analysis", DETAILED_ANALYSIS_PATH, session_id, transcript, options, self.detailed_timeout, owner
        )
