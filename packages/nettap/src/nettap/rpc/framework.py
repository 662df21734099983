"""Command dispatch for debugger WebSocket sessions.

Messages are ``{id, method, params}`` commands answered with ``{id, result}``
or ``{id, error: {code, message}}``. Malformed input is answered, never
raised, so one bad command does not close the session.

PUBLIC API:
  - RPCContext: What a handler gets besides its params
  - RPCFramework: Method registry and dispatcher
"""

import inspect
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from nettap.errors import ErrorCode, TransportError

if TYPE_CHECKING:
    from nettap.api.sessions import Session
    from nettap.services.main import NettapService

__all__ = ["RPCContext", "RPCFramework"]

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


@dataclass
class RPCContext:
    """Per-command context passed to every handler as first argument."""

    service: "NettapService"
    session: "Session | None" = None
    method: str = ""


class RPCFramework:
    """Registry of command handlers keyed by protocol method name.

    Handlers may be sync or async and take ``(ctx, **params)``. A fallback
    resolver can supply handlers for names that were not registered.
    """

    def __init__(self):
        self.handlers: dict[str, Handler] = {}
        self.fallback: Callable[[str], Handler | None] | None = None

    def method(self, name: str) -> Callable[[Handler], Handler]:
        """Register a handler for ``name``.

        Examples:
            >>> rpc.method("Network.enable")(network_enable)
        """

        def decorator(fn: Handler) -> Handler:
            self.handlers[name] = fn
            return fn

        return decorator

    def resolve(self, name: str) -> Handler | None:
        handler = self.handlers.get(name)
        if handler is None and self.fallback is not None:
            handler = self.fallback(name)
        return handler

    async def dispatch(self, raw: str | bytes, ctx: RPCContext) -> dict | None:
        """Handle one raw command message.

        Returns:
            Reply dict, or None for messages without an id.
        """
        try:
            message = json.loads(raw)
        except ValueError as e:
            return _error_reply(None, TransportError(ErrorCode.PARSE_ERROR, f"Parse error: {e}"))

        if not isinstance(message, dict):
            return _error_reply(None, TransportError(ErrorCode.INVALID_REQUEST, "Command must be an object"))

        request_id = message.get("id")
        method = message.get("method")
        if not isinstance(method, str) or not method:
            return _error_reply(request_id, TransportError(ErrorCode.INVALID_REQUEST, "Missing method"))

        try:
            result = await self.call(method, message.get("params"), ctx)
        except TransportError as e:
            logger.debug(f"{method} failed: {e.message}")
            return _error_reply(request_id, e)
        except Exception as e:
            logger.error(f"Handler for {method} raised: {e}", exc_info=True)
            return _error_reply(request_id, TransportError(ErrorCode.SERVER_ERROR, str(e)))

        if request_id is None:
            return None
        return {"id": request_id, "result": result if result is not None else {}}

    async def call(self, method: str, params: Any, ctx: RPCContext) -> Any:
        """Invoke the handler for ``method``.

        Raises:
            TransportError: Unknown method or invalid params.
        """
        handler = self.resolve(method)
        if handler is None:
            raise TransportError(ErrorCode.METHOD_NOT_FOUND, f"'{method}' wasn't found")

        params = params or {}
        if not isinstance(params, dict):
            raise TransportError(ErrorCode.INVALID_PARAMS, "Params must be an object")

        ctx.method = method
        try:
            inspect.signature(handler).bind(ctx, **params)
        except TypeError as e:
            raise TransportError(ErrorCode.INVALID_PARAMS, f"Invalid params for {method}: {e}")

        result = handler(ctx, **params)
        if inspect.isawaitable(result):
            result = await result
        return result


def _error_reply(request_id: Any, error: TransportError) -> dict:
    reply: dict = {"error": error.to_dict()}
    if request_id is not None:
        reply["id"] = request_id
    return reply
