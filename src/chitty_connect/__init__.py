"""ChittyConnect MCP gateway.

Serves the MCP Streamable HTTP endpoint, the OAuth bridge that protects it and
the tool dispatcher that fans tool calls out to ChittyOS services.
"""

import logging
import os

__version__ = "2.0.2"

logger = logging.getLogger("chitty-connect")


def main() -> None:
    """Run the gateway with uvicorn.

    Environment variables:
    - HOST: Bind address (default: 0.0.0.0)
    - PORT: Bind port (default: 8000)
    - MCP_VERBOSE / MCP_VERY_VERBOSE: Log level INFO / DEBUG
    """
    import uvicorn

    from chitty_connect.servers.main import create_app
    from chitty_connect.utils.logging import setup_logging

    if os.getenv("MCP_VERY_VERBOSE", "false").lower() in ("true", "1", "yes"):
        level = logging.DEBUG
    elif os.getenv("MCP_VERBOSE", "false").lower() in ("true", "1", "yes"):
        level = logging.INFO
    else:
        level = logging.WARNING
    setup_logging(level)

    host = os.getenv("HOST", "0.0.0.0")  # noqa: S104
    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Starting ChittyConnect gateway on {host}:{port}")
    uvicorn.run(create_app(), host=host, port=port)


__all__ = ["__version__", "main"]
