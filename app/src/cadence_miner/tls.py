"""Mutual-TLS credentials for the node websocket."""

import os
import ssl
from urllib.parse import urlparse

from .config import NodeConfig


class CredentialsError(Exception):
    """TLS material could not be loaded."""


def build_ssl_context(ca: str, cert: str, key: str) -> ssl.SSLContext:
    """
    Build a client context trusting ``ca`` and presenting the ``cert``/``key`` pair.

    Args:
        ca: path to the node's certificate authority bundle (PEM)
        cert: path to the client certificate (PEM)
        key: path to the client certificate key (PEM)

    Raises:
        CredentialsError: a file is missing, unreadable, or holds no usable certificates
    """
    if not ca:
        raise CredentialsError("no certificate authority file configured")
    if not cert or not key:
        raise CredentialsError("client certificate and key are both required")

    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    try:
        context.load_verify_locations(cafile=ca)
    except (OSError, ssl.SSLError) as exc:
        raise CredentialsError(f"no certificates found in CA file {ca}: {exc}") from exc
    try:
        context.load_cert_chain(certfile=cert, keyfile=key)
    except (OSError, ssl.SSLError) as exc:
        raise CredentialsError(f"cannot load client keypair {cert}, {key}: {exc}") from exc
    return context


def ssl_context_for(node: NodeConfig) -> ssl.SSLContext | None:
    """Return the TLS context for ``node``, or None for plain ``ws://`` endpoints.

    Credential paths may start with ``~``.
    """
    if urlparse(node.endpoint).scheme == "ws":
        return None
    return build_ssl_context(os.path.expanduser(node.ca), os.path.expanduser(node.cert), os.path.expanduser(node.key))
