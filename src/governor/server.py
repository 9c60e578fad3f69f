"""
JSON-RPC 2.0 dispatcher for agent-facing governance tools.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from . import __version__
from .audit import AuditTrail
from .handlers import GOVERNANCE_TOOLS, HandlerContext, PurchaseRouter, describe_policy
from .payment import PaymentProvider
from .store import StorageProvider

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "governor"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

NOTIFICATIONS = frozenset({"initialized", "notifications/initialized"})

POLICY_URI = "governance://policy"
BUDGET_URI = "governance://budget"
RESOURCES = [
    {
        "uri": POLICY_URI,
        "name": "Spending policy",
        "description": "Limits, approval rules and guardrails for the calling agent",
        "mimeType": "application/json",
    },
    {
        "uri": BUDGET_URI,
        "name": "Budget",
        "description": "Current spend and remaining budget for the calling agent",
        "mimeType": "application/json",
    },
]


class RpcError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def error_response(request_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def success_response(request_id: Any, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


class GovernanceServer:
    """Answers JSON-RPC requests on behalf of one deployment.

    The caller's identity arrives as a HandlerContext; resolving it from
    credentials is the transport's job.
    """

    def __init__(
        self,
        storage: StorageProvider,
        payments: PaymentProvider,
        audit: Optional[AuditTrail] = None,
    ):
        self.router = PurchaseRouter(storage, payments, audit=audit)
        self.storage = storage

    async def handle_raw(self, text: str, context: HandlerContext) -> Optional[dict]:
        try:
            body = json.loads(text)
        except ValueError:
            return error_response(None, PARSE_ERROR, "Parse error")
        return await self.handle_request(body, context)

    async def handle_request(self, body: Any, context: HandlerContext) -> Optional[dict]:
        """Dispatch one request. Returns None for notifications."""
        if not isinstance(body, dict) or body.get("jsonrpc") != "2.0":
            return error_response(None, INVALID_REQUEST, "Invalid Request")
        method = body.get("method")
        if not isinstance(method, str):
            return error_response(None, INVALID_REQUEST, "Invalid Request")
        if "id" not in body:
            if method in NOTIFICATIONS or method.startswith("notifications/"):
                return None
            return error_response(None, INVALID_REQUEST, "Invalid Request")

        request_id = body["id"]
        params = body.get("params") or {}
        try:
            result = await self._dispatch(method, params, context)
        except RpcError as exc:
            return error_response(request_id, exc.code, exc.message)
        except Exception:
            logger.exception("Request %r (%s) failed", request_id, method)
            return error_response(request_id, INTERNAL_ERROR, "Internal server error")
        return success_response(request_id, result)

    async def _dispatch(self, method: str, params: Any, context: HandlerContext) -> Any:
        if method == "initialize":
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {
                    "tools": {"listChanged": False},
                    "resources": {"subscribe": False, "listChanged": False},
                    "prompts": {"listChanged": False},
                },
                "serverInfo": {"name": SERVER_NAME, "version": __version__},
            }
        if method in NOTIFICATIONS or method == "ping":
            return {}
        if method == "tools/list":
            return {"tools": GOVERNANCE_TOOLS}
        if method == "tools/call":
            return await self._call_tool(params, context)
        if method == "resources/list":
            return {"resources": RESOURCES}
        if method == "resources/read":
            return await self._read_resource(params, context)
        if method == "prompts/list":
            return {"prompts": []}
        raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")

    async def _call_tool(self, params: Any, context: HandlerContext) -> dict:
        if not isinstance(params, dict) or not isinstance(params.get("name"), str):
            raise RpcError(INVALID_PARAMS, "Missing tool name")
        name = params["name"]
        if name not in self.router.tools:
            raise RpcError(METHOD_NOT_FOUND, f"Unknown tool: {name}")
        result = await self.router.call_tool(name, params.get("arguments") or {}, context)
        return result.to_wire()

    async def _read_resource(self, params: Any, context: HandlerContext) -> dict:
        uri = params.get("uri") if isinstance(params, dict) else None
        if not isinstance(uri, str):
            raise RpcError(INVALID_PARAMS, "Missing resource uri")

        if uri == POLICY_URI:
            agent = await self.storage.get_agent(context.agent_id)
            if agent is None:
                raise RpcError(INVALID_PARAMS, "Agent not found")
            org = await self.storage.get_organization(context.organization_id)
            data: Any = describe_policy(agent, org)
        elif uri == BUDGET_URI:
            result = await self.router.check_budget({}, context)
            if result.is_error:
                raise RpcError(INVALID_PARAMS, "Agent not found")
            data = result.data()
        else:
            raise RpcError(INVALID_PARAMS, f"Unknown resource: {uri}")

        return {
            "contents": [
                {"uri": uri, "mimeType": "application/json", "text": json.dumps(data, indent=2)}
            ]
        }
