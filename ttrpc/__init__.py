"""Protobuf-framed RPC over Unix domain and vsock sockets: framing, a client and a server."""

__version__ = "0.8.4"