"""httpx client for the archiver HTTP API, used by the batch orchestrator."""

from __future__ import annotations

from typing import Any, Final, TypeVar

import httpx
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.config.logging_config import get_logger
from src.domain.api_models import (
    ApiCall,
    ErrorResponse,
    ProcessMediaResponse,
    SyncResponse,
)
from src.domain.models import SyncMode
from src.observability.tracing import CORRELATION_HEADER, CORRELATION_ID_KEY

__all__ = ["ArchiverApiClient"]

logger = get_logger(__name__)

HTTP_STATUS_OK: Final[int] = 200
HTTP_STATUS_UNAUTHORIZED: Final[int] = 401
HTTP_STATUS_TOO_MANY_REQUESTS: Final[int] = 429

ResponseT = TypeVar("ResponseT", bound=BaseModel)


def _retry_after(response: httpx.Response, body: dict[str, Any]) -> float | None:
    hint = body.get("retryAfterSeconds")
    if hint is None:
        hint = response.headers.get("Retry-After")
    if hint is None:
        return None
    try:
        return float(hint)
    except (TypeError, ValueError):
        return None


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class ArchiverApiClient:
    """Calls ``/sync`` and ``/process-media`` and returns tagged results.

    Transport errors and non-200 statuses never raise; they come back as an
    :class:`ApiCall` with the matching status.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            base_url=self._base_url, timeout=timeout
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ArchiverApiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        correlation_id = structlog.contextvars.get_contextvars().get(CORRELATION_ID_KEY)
        if correlation_id:
            return {CORRELATION_HEADER: str(correlation_id)}
        return {}

    def sync(
        self,
        channel_id: str,
        forward_empty_streak: int = 0,
        mode: SyncMode | None = None,
    ) -> ApiCall[SyncResponse]:
        params: dict[str, str | int] = {
            "channelId": channel_id,
            "forwardEmptyStreak": forward_empty_streak,
        }
        if mode is not None:
            params["mode"] = mode.value
        return self._post("/sync", params, SyncResponse)

    def process_media(
        self, channel_id: str, size: int
    ) -> ApiCall[ProcessMediaResponse]:
        return self._post(
            "/process-media",
            {"channelId": channel_id, "size": size},
            ProcessMediaResponse,
        )

    def _post(
        self,
        path: str,
        params: dict[str, str | int],
        model: type[ResponseT],
    ) -> ApiCall[ResponseT]:
        try:
            response = self._client.post(path, params=params, headers=self._headers())
        except httpx.TimeoutException as exc:
            logger.warning("archiver_api_timeout", path=path, error=str(exc))
            return ApiCall.timeout(f"{path} timed out")
        except httpx.HTTPError as exc:
            logger.error("archiver_api_transport_error", path=path, error=str(exc))
            return ApiCall.failed(f"{path} transport error: {exc}")

        body = _json_body(response)

        if response.status_code == HTTP_STATUS_OK:
            try:
                return ApiCall.success(model.model_validate(body))
            except PydanticValidationError as exc:
                logger.error("archiver_api_bad_payload", path=path, error=str(exc))
                return ApiCall.failed(f"{path} returned an unexpected payload")

        error = self._error_text(body, response)
        if response.status_code == HTTP_STATUS_TOO_MANY_REQUESTS:
            return ApiCall.rate_limited(
                _retry_after(response, body), self._partial_payload(body, model)
            )

        if response.status_code == HTTP_STATUS_UNAUTHORIZED:
            return ApiCall.credentials(error, self._partial_payload(body, model))

        logger.error(
            "archiver_api_error",
            path=path,
            status_code=response.status_code,
            error=error,
        )
        return ApiCall.failed(error)

    @staticmethod
    def _partial_payload(body: dict[str, Any], model: type[ResponseT]) -> ResponseT | None:
        """Results the server attached to an error response, if any."""
        if "results" not in body and "messages" not in body:
            return None
        try:
            return model.model_validate(body)
        except PydanticValidationError:
            return None

    @staticmethod
    def _error_text(body: dict[str, Any], response: httpx.Response) -> str:
        try:
            return ErrorResponse.model_validate(body).error
        except PydanticValidationError:
            return f"HTTP {response.status_code}"
