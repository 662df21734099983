"""Command dispatch for debugger sessions.

PUBLIC API:
  - RPCFramework: Method registry and dispatcher
  - RPCContext: Handler context
  - register_handlers: Register the Network domain handlers
"""

from nettap.rpc.framework import RPCContext, RPCFramework
from nettap.rpc.handlers import register_handlers

__all__ = ["RPCFramework", "RPCContext", "register_handlers"]
