"""Network domain queries over the request registry.

PUBLIC API:
  - NetworkService: Response body lookup for Network.getResponseBody
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from nettap.body import BodyDecoder, DecodedBody
from nettap.errors import DecodeError, ErrorCode, TransportError

if TYPE_CHECKING:
    from nettap.registry import RequestDetail, RequestRegistry

logger = logging.getLogger(__name__)


class NetworkService:
    """Body access for attached front-ends.

    Attributes:
        registry: Registry the request ids refer to.
        decoder: Decoder used on first body access.
        body_timeout: Seconds to wait for an in-flight request to settle.
    """

    def __init__(self, registry: "RequestRegistry", body_timeout: float = 10.0):
        self.registry = registry
        self.decoder = BodyDecoder()
        self.body_timeout = body_timeout
        self._decoding: dict[str, asyncio.Task] = {}

    @property
    def request_count(self) -> int:
        return len(self.registry)

    async def get_response_body(self, request_id: str) -> dict:
        """Decoded body for ``request_id``, waiting for the request to finish.

        Only the caller waits; event delivery to other sessions continues.

        Returns:
            {"body": str, "base64Encoded": bool}

        Raises:
            TransportError: Unknown id, timeout, or body unavailable.
        """
        detail = self.registry.get(request_id)
        if detail is None:
            raise TransportError(ErrorCode.INVALID_PARAMS, f"No resource with given identifier found: {request_id}")

        if not detail.terminal:
            try:
                await asyncio.wait_for(detail.settled.wait(), timeout=self.body_timeout)
            except asyncio.TimeoutError:
                raise TransportError(ErrorCode.SERVER_ERROR, f"Timed out waiting for body of {request_id}")

        try:
            body = detail.cached_body()
            if body is None:
                body = await self._decode(detail)
        except DecodeError as e:
            raise TransportError(ErrorCode.SERVER_ERROR, f"Body unavailable: {e}")
        return body.to_dict()

    def _decode(self, detail: "RequestDetail") -> "asyncio.Future[DecodedBody]":
        """Decode once per request. Concurrent callers share the same task."""
        task = self._decoding.get(detail.id)
        if task is None:
            task = asyncio.create_task(self._decode_in_thread(detail))
            self._decoding[detail.id] = task

            def done(finished: asyncio.Task) -> None:
                self._decoding.pop(detail.id, None)
                if not finished.cancelled():
                    finished.exception()

            task.add_done_callback(done)
        # A caller giving up must not cancel the decode for the others
        return asyncio.shield(task)

    async def _decode_in_thread(self, detail: "RequestDetail") -> DecodedBody:
        chunks = list(detail.chunks)
        try:
            body = await asyncio.to_thread(
                self.decoder.decode, chunks, detail.content_encoding, detail.charset, detail.mime_type
            )
        except DecodeError as e:
            detail.cache_decoded(error=e)
            raise
        detail.cache_decoded(body)
        return body
