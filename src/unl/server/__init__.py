"""Administrative HTTP surface for the validators engine."""

from .rpc import RpcServer, create_app

__all__ = [
    "RpcServer",
    "create_app",
]
