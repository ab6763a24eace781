"""httpx-backed implementation of the changes feed HTTP collaborator."""

from __future__ import annotations

import logging
from typing import Dict, Iterator, Mapping, Optional
from urllib.parse import quote

import httpx

from .errors import ProtocolError
from .follower import FeedResponse
from .models import FeedMode, FeedParameters
from .request import DEFAULT_REQUEST_TIMEOUT_SECONDS
from .validation import RequestValidator

logger = logging.getLogger(__name__)

CHANGES_OPERATION_ID = "postChanges"


class StreamingFeedResponse:
    """Iterable over the raw bytes of a streamed changes response."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    def __iter__(self) -> Iterator[bytes]:
        try:
            yield from self._response.iter_bytes()
        finally:
            self._response.close()

    def close(self) -> None:
        self._response.close()


class HttpFeedTransport:
    """Issues ``POST /{db}/_changes`` requests for a :class:`ChangesFollower`.

    Authentication is whatever ``auth`` (or the supplied client) carries; the
    transport never inspects credentials.
    """

    def __init__(
        self,
        base_url: str,
        database: str,
        *,
        client: Optional[httpx.Client] = None,
        auth: Optional[httpx.Auth] = None,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        tolerance_factor: float = 2.0,
        validator: Optional[RequestValidator] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must be provided")
        if not database:
            raise ValueError("database must be provided")
        self._base_url = base_url.rstrip("/")
        self._database = database
        self._request_timeout = request_timeout_seconds
        self._tolerance_factor = tolerance_factor
        self._validator = validator
        self._owns_client = client is None
        self._client = client or httpx.Client(
            auth=auth,
            timeout=request_timeout_seconds,
            headers={"Accept": "application/json"},
        )

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/{quote(self._database, safe='')}/_changes"

    def issue(self, params: FeedParameters) -> FeedResponse:
        if self._validator is not None:
            self._validator.validate(CHANGES_OPERATION_ID, {"db": self._database})
        query = self.query_params(params)
        body = self.request_body(params)
        logger.debug("POST %s %s", self.endpoint, query)
        if params.mode is FeedMode.BOUNDED:
            response = self._client.post(
                self.endpoint,
                params=query,
                json=body,
                timeout=self._request_timeout,
            )
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, Mapping):
                raise ProtocolError("changes response body is not a JSON object")
            return payload

        read_timeout = params.heartbeat_interval_ms / 1000.0 * self._tolerance_factor
        request = self._client.build_request(
            "POST",
            self.endpoint,
            params=query,
            json=body,
            timeout=httpx.Timeout(self._request_timeout, read=read_timeout),
        )
        response = self._client.send(request, stream=True)
        if response.is_error:
            try:
                response.read()
            finally:
                response.close()
            response.raise_for_status()
        return StreamingFeedResponse(response)

    @staticmethod
    def query_params(params: FeedParameters) -> Dict[str, str]:
        query = {
            "feed": "normal" if params.mode is FeedMode.BOUNDED else "continuous",
            "since": params.since,
        }
        if params.mode is FeedMode.CONTINUOUS:
            query["heartbeat"] = str(params.heartbeat_interval_ms)
        if params.limit is not None:
            query["limit"] = str(params.limit)
        if params.include_docs:
            query["include_docs"] = "true"
        if params.filter_selector is not None:
            query["filter"] = "_selector"
        elif params.filter_doc_ids:
            query["filter"] = "_doc_ids"
        return query

    @staticmethod
    def request_body(params: FeedParameters) -> Dict[str, object]:
        if params.filter_selector is not None:
            return {"selector": dict(params.filter_selector)}
        if params.filter_doc_ids:
            return {"doc_ids": list(params.filter_doc_ids)}
        return {}

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpFeedTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["HttpFeedTransport", "StreamingFeedResponse"]
