"""Careflow server entry point — ``python -m careflow.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from careflow.core.config.settings import get_settings
from careflow.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the Careflow MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.careflow_log_level.upper(), logging.INFO))

    logger = logging.getLogger(__name__)
    if not settings.careflow_allow_insecure_bind and not _is_loopback_host(settings.careflow_host):
        raise RuntimeError(
            "Refusing to bind the Careflow server to a non-loopback host without an auth layer. "
            "Set CAREFLOW_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info("Starting Careflow server on %s:%d", settings.careflow_host, settings.careflow_port)

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.careflow_host,
        port=settings.careflow_port,
    )


if __name__ == "__main__":
    run()
