"""JSON-RPC 2.0 router for the MCP Streamable HTTP endpoint.

Methods form a closed set (``RpcMethod``). Tool and resource methods are
answered by the internal REST endpoints in ``tools_api``, called in-process
with the caller's Authorization header.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
)
from starlette.requests import Request

from chitty_connect.config import PROTOCOL_VERSION
from chitty_connect.servers import tools_api

logger = logging.getLogger("chitty-connect.server.jsonrpc")

JSONRPC_VERSION = "2.0"


class RpcMethod(str, Enum):
    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    PING = "ping"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"
    RESOURCES_LIST = "resources/list"
    RESOURCES_READ = "resources/read"
    PROMPTS_LIST = "prompts/list"

    @classmethod
    def lookup(cls, name: Any) -> "RpcMethod | None":
        try:
            return cls(name)
        except ValueError:
            return None


class JsonRpcError(Exception):
    """An error answered in-band with a JSON-RPC error object."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class RpcReply:
    """HTTP status and body for one POST. ``payload`` None means 204."""

    status_code: int
    payload: Any = None


def error_envelope(msg_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": msg_id,
        "error": {"code": code, "message": message},
    }


def result_envelope(msg_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": msg_id, "result": result}


def _decode(response) -> Any:
    return json.loads(response.body)


class JsonRpcRouter:
    """Answers JSON-RPC messages posted to the MCP endpoint.

    The router keeps no state between calls; sessions are handled by the
    transport.
    """

    def __init__(
        self,
        server_name: str,
        server_version: str,
        protocol_version: str = PROTOCOL_VERSION,
    ) -> None:
        self.server_name = server_name
        self.server_version = server_version
        self.protocol_version = protocol_version
        self._handlers = {
            RpcMethod.INITIALIZE: self._initialize,
            RpcMethod.INITIALIZED: self._initialized,
            RpcMethod.PING: self._ping,
            RpcMethod.TOOLS_LIST: self._tools_list,
            RpcMethod.TOOLS_CALL: self._tools_call,
            RpcMethod.RESOURCES_LIST: self._resources_list,
            RpcMethod.RESOURCES_READ: self._resources_read,
            RpcMethod.PROMPTS_LIST: self._prompts_list,
        }

    async def handle_body(self, body: bytes, request: Request) -> RpcReply:
        """Handle a raw POST body: a single message or a batch.

        Returns:
            RpcReply; only a body that is not JSON gets a non-200 error status
        """
        try:
            message = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.debug(f"Unparseable JSON-RPC body: {e}")
            return RpcReply(400, error_envelope(None, PARSE_ERROR, "Parse error"))

        if isinstance(message, list):
            if not message:
                return RpcReply(
                    200, error_envelope(None, INVALID_REQUEST, "Invalid Request: empty batch")
                )
            replies = await asyncio.gather(
                *(self.handle_message(item, request) for item in message)
            )
            responses = [reply for reply in replies if reply is not None]
            return RpcReply(204) if not responses else RpcReply(200, responses)

        response = await self.handle_message(message, request)
        return RpcReply(204) if response is None else RpcReply(200, response)

    async def handle_message(self, message: Any, request: Request) -> dict[str, Any] | None:
        """Handle one message.

        Returns:
            The response envelope, or None for a notification
        """
        if not isinstance(message, dict):
            return error_envelope(
                None, INVALID_REQUEST, "Invalid Request: message must be an object"
            )

        msg_id = message.get("id")
        is_notification = "id" not in message
        if message.get("jsonrpc") != JSONRPC_VERSION:
            return error_envelope(
                msg_id, INVALID_REQUEST, "Invalid Request: jsonrpc must be \"2.0\""
            )

        method_name = message.get("method")
        method = RpcMethod.lookup(method_name)
        if method is None:
            if is_notification:
                logger.debug(f"Dropping notification {method_name}")
                return None
            return error_envelope(msg_id, METHOD_NOT_FOUND, f"Method not found: {method_name}")

        params = message.get("params")
        if not isinstance(params, dict):
            params = {}

        try:
            result = await self._handlers[method](params, request)
        except JsonRpcError as e:
            if is_notification:
                logger.info(f"Dropping error for notification {method_name}: {e.message}")
                return None
            return error_envelope(msg_id, e.code, e.message)
        except Exception as e:
            logger.error(f"Error handling {method_name}: {e}", exc_info=True)
            if is_notification:
                return None
            return error_envelope(msg_id, INTERNAL_ERROR, f"Internal error: {e}")

        if is_notification:
            return None
        return result_envelope(msg_id, result if result is not None else {})

    async def _initialize(self, params: dict[str, Any], request: Request) -> dict[str, Any]:
        client_info = params.get("clientInfo") or {}
        logger.info(
            f"Initialize from {client_info.get('name', 'unknown client')} "
            f"(protocol {params.get('protocolVersion', 'unspecified')})"
        )
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": {
                "tools": {"listChanged": False},
                "resources": {"subscribe": False, "listChanged": False},
            },
            "serverInfo": {"name": self.server_name, "version": self.server_version},
        }

    async def _initialized(self, params: dict[str, Any], request: Request) -> None:
        return None

    async def _ping(self, params: dict[str, Any], request: Request) -> dict[str, Any]:
        return {}

    async def _tools_list(self, params: dict[str, Any], request: Request) -> Any:
        response = await tools_api.call_internal(
            tools_api.tools_list, request, path="/mcp/tools/list"
        )
        return _decode(response)

    async def _tools_call(self, params: dict[str, Any], request: Request) -> Any:
        body = json.dumps(
            {"name": params.get("name"), "arguments": params.get("arguments") or {}}
        ).encode()
        response = await tools_api.call_internal(
            tools_api.tools_call, request, method="POST", path="/mcp/tools/call", body=body
        )
        try:
            return _decode(response)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise JsonRpcError(
                INTERNAL_ERROR,
                f"Internal error: tools/call returned non-JSON ({response.status_code})",
            )

    async def _resources_list(self, params: dict[str, Any], request: Request) -> Any:
        response = await tools_api.call_internal(
            tools_api.resources_list, request, path="/mcp/resources/list"
        )
        return _decode(response)

    async def _resources_read(self, params: dict[str, Any], request: Request) -> Any:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise JsonRpcError(INVALID_PARAMS, "Invalid params: uri is required")
        response = await tools_api.call_internal(
            tools_api.resources_read,
            request,
            path="/mcp/resources/read",
            params={"uri": uri},
        )
        return _decode(response)

    async def _prompts_list(self, params: dict[str, Any], request: Request) -> dict[str, Any]:
        return {"prompts": []}
