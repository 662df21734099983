"""RPC method handlers - thin wrappers around NettapService.

Handlers receive RPCContext and delegate to the service or the calling
session.

Handler categories:
  - Network domain: Network.enable, Network.disable, Network.getResponseBody
  - Domain toggles: any other *.enable / *.disable, acknowledged so stock
    front-ends finish attaching

PUBLIC API:
  - register_handlers: Register all RPC handlers with framework
"""

from nettap.errors import ErrorCode, TransportError
from nettap.rpc.framework import Handler, RPCContext, RPCFramework

__all__ = ["register_handlers"]


def register_handlers(rpc: RPCFramework) -> None:
    """Register all RPC handlers with the framework.

    Args:
        rpc: RPCFramework instance to register handlers with
    """
    rpc.method("Network.enable")(network_enable)
    rpc.method("Network.disable")(network_disable)
    rpc.method("Network.getResponseBody")(network_get_response_body)

    rpc.fallback = _domain_toggle


def _require_session(ctx: RPCContext):
    if ctx.session is None:
        raise TransportError(ErrorCode.INVALID_REQUEST, f"{ctx.method} needs an attached session")
    return ctx.session


def network_enable(ctx: RPCContext, **options) -> dict:
    """Start streaming Network events to the calling session.

    Buffer-size options sent by front-ends are accepted and ignored; bounds
    come from the service configuration.
    """
    _require_session(ctx).enable()
    return {}


def network_disable(ctx: RPCContext) -> dict:
    """Stop streaming Network events to the calling session."""
    _require_session(ctx).disable()
    return {}


async def network_get_response_body(ctx: RPCContext, requestId: str) -> dict:
    """Decoded response body.

    Args:
        requestId: Request id from requestWillBeSent

    Returns:
        {"body": str, "base64Encoded": bool}
    """
    return await ctx.service.network.get_response_body(requestId)


def acknowledge(ctx: RPCContext, **params) -> dict:
    return {}


def _domain_toggle(method: str) -> Handler | None:
    if method.endswith(".enable") or method.endswith(".disable"):
        return acknowledge
    return None
