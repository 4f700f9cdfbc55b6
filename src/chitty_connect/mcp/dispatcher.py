"""Tool dispatch: routes MCP tool calls to ChittyOS services.

Each ``ToolName`` maps to exactly one handler. Most tools are thin proxies
onto the gateway's own REST API (``ProxyRoute``); identity, ledger, fact,
contextual and search tools talk to their services directly and apply the
pre-flight evidence and permission checks fact governance requires.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from functools import partial
from string import Formatter
from typing import Any
from urllib.parse import quote

import httpx
from starlette.concurrency import run_in_threadpool

from chitty_connect.config import ServiceEndpoints
from chitty_connect.mcp.tools import ToolName
from chitty_connect.mcp.upstream import (
    ERROR_TEXT_LIMIT,
    ToolResult,
    UpstreamResponse,
    error_result,
    fetch,
    json_result,
    text_result,
    to_tool_result,
    tolerant_body,
)
from chitty_connect.utils.credentials import ServiceCredentials
from chitty_connect.utils.proof import ProofClient, ProofError, ProofQueue
from chitty_connect.utils.storage import LocalFileStore
from chitty_connect.utils.trust import FactAction, PermissionChecker

logger = logging.getLogger("chitty-connect.mcp.dispatcher")

SEARCH_DISPLAY_RESULTS = 5
SEARCH_DEFAULT_RESULTS = 10
SNIPPET_LENGTH = 200

PROOF_QUEUE_FAILED_WARNING = (
    "Seal succeeded but proof queue failed. Manual proof minting may be required."
)
PROOF_QUEUE_MISSING_WARNING = "Proof queue not configured. Proof will not be minted."


@dataclass(frozen=True)
class DispatchContext:
    """Per-call settings: process environment, internal base URL, caller token."""

    env: Mapping[str, str]
    base_url: str
    auth_token: str | None = None

    @property
    def auth_headers(self) -> dict[str, str]:
        return _bearer(self.auth_token) if self.auth_token else {}


Handler = Callable[[dict[str, Any], DispatchContext], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ProxyRoute:
    """An internal API endpoint a tool forwards to.

    ``path`` may hold ``{argument}`` placeholders filled from the tool
    arguments. ``body_fields`` of None forwards every argument as the JSON
    body of a POST; ``query_fields`` maps query parameters to arguments.
    """

    method: str
    path: str
    label: str
    body_fields: tuple[str, ...] | None = None
    query_fields: tuple[tuple[str, str], ...] = ()
    defaults: Mapping[str, Any] = field(default_factory=dict)


PROXY_ROUTES: dict[ToolName, ProxyRoute] = {
    ToolName.CASE_CREATE: ProxyRoute("POST", "/api/chittycases/create", "ChittyCases"),
    ToolName.CASE_GET: ProxyRoute("GET", "/api/chittycases/{case_id}", "ChittyCases"),
    ToolName.EVIDENCE_INGEST: ProxyRoute(
        "POST", "/api/chittyevidence/ingest", "ChittyEvidence"
    ),
    ToolName.EVIDENCE_VERIFY: ProxyRoute(
        "GET", "/api/chittyevidence/{evidence_id}", "ChittyEvidence"
    ),
    ToolName.INTELLIGENCE_ANALYZE: ProxyRoute(
        "POST", "/api/intelligence/analyze", "Intelligence"
    ),
    ToolName.CONTEXT_RESOLVE: ProxyRoute(
        "POST",
        "/api/v1/intelligence/context/resolve",
        "Context",
        body_fields=("project_path", "platform", "support_type", "organization"),
        defaults={"platform": "claude_code", "support_type": "development"},
    ),
    ToolName.CONTEXT_RESTORE: ProxyRoute(
        "GET",
        "/api/v1/intelligence/context/{chitty_id}/restore",
        "Context",
        query_fields=(("project", "project_slug"),),
    ),
    ToolName.CONTEXT_COMMIT: ProxyRoute(
        "POST",
        "/api/v1/intelligence/context/commit",
        "Context",
        body_fields=("session_id", "chitty_id", "project_slug", "metrics", "decisions"),
    ),
    ToolName.CONTEXT_CHECK: ProxyRoute(
        "GET", "/api/v1/intelligence/context/{chitty_id}/check", "Context"
    ),
    ToolName.CONTEXT_CHECKPOINT: ProxyRoute(
        "POST",
        "/api/v1/intelligence/context/checkpoint",
        "Context",
        body_fields=("chitty_id", "project_slug", "name", "state"),
    ),
    ToolName.MEMORY_PERSIST: ProxyRoute("POST", "/api/v1/memory/persist", "Memory"),
    ToolName.MEMORY_RECALL: ProxyRoute(
        "GET",
        "/api/v1/memory/recall",
        "Memory",
        query_fields=(
            ("query", "query"),
            ("chitty_id", "chitty_id"),
            ("session_id", "session_id"),
            ("limit", "limit"),
        ),
    ),
    ToolName.CREDENTIAL_RETRIEVE: ProxyRoute(
        "POST", "/api/credentials/retrieve", "Credentials"
    ),
    ToolName.CREDENTIAL_AUDIT: ProxyRoute("POST", "/api/credentials/audit", "Credentials"),
    ToolName.SERVICES_STATUS: ProxyRoute("GET", "/api/services/status", "Services"),
    ToolName.ECOSYSTEM_AWARENESS: ProxyRoute("GET", "/api/services/status", "Services"),
    ToolName.CHRONICLE_LOG: ProxyRoute(
        "POST", "/api/chittychronicle/log", "ChittyChronicle"
    ),
    ToolName.SYNC_DATA: ProxyRoute("POST", "/api/chittysync/sync", "ChittySync"),
    ToolName.NOTION_QUERY: ProxyRoute("POST", "/api/thirdparty/notion/query", "Notion"),
    ToolName.OPENAI_CHAT: ProxyRoute("POST", "/api/thirdparty/openai/chat", "OpenAI"),
    ToolName.NEON_QUERY: ProxyRoute("POST", "/api/thirdparty/neon/query", "Neon"),
}
PROXY_ROUTES.update(
    {
        tool: ProxyRoute(
            "POST",
            f"/api/chittyfinance/{tool.value.removeprefix('chitty_finance_')}",
            "ChittyFinance",
        )
        for tool in ToolName
        if tool.value.startswith("chitty_finance_")
    }
)


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _segment(value: Any) -> str:
    return quote(str(value), safe="")


def _placeholders(path: str) -> list[str]:
    return [name for _, name, _, _ in Formatter().parse(path) if name]


def _missing_argument(arguments: dict[str, Any], *names: str) -> ToolResult | None:
    for name in names:
        if arguments.get(name) in (None, ""):
            return error_result(f"Missing required argument: {name}")
    return None


def _evidence_hash(evidence: UpstreamResponse) -> str | None:
    """Integrity hash of an evidence record, top-level or nested under ``thing``."""
    record = evidence.body if evidence.is_json else None
    if not isinstance(record, dict):
        return None
    thing = record.get("thing")
    nested = thing.get("file_hash") if isinstance(thing, dict) else None
    return record.get("file_hash") or nested


class ToolDispatcher:
    """Executes tool calls and normalizes every outcome into a tool result."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        permission_checker: PermissionChecker,
        *,
        credentials: ServiceCredentials | None = None,
        proof_client: ProofClient | None = None,
        proof_queue: ProofQueue | None = None,
        file_store: LocalFileStore | None = None,
        endpoints: ServiceEndpoints | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            http_client: Shared async HTTP client for every downstream call
            permission_checker: Trust-based checks for seal, dispute and export
            credentials: Service token source for ChittyID
            proof_client: ChittyProof client used by PDF export
            proof_queue: Queue receiving proof jobs for sealed facts
            file_store: Storage for generated PDF exports
            endpoints: Base URLs of the downstream services

        Raises:
            RuntimeError: If a tool has no handler
        """
        self.http_client = http_client
        self.permission_checker = permission_checker
        self.credentials = credentials or ServiceCredentials()
        self.proof_client = proof_client
        self.proof_queue = proof_queue
        self.file_store = file_store
        self.endpoints = endpoints or ServiceEndpoints()

        self._handlers: dict[ToolName, Handler] = {
            ToolName.ID_MINT: self._id_mint,
            ToolName.ID_VALIDATE: self._id_validate,
            ToolName.EVIDENCE_SEARCH: self._evidence_search,
            ToolName.EVIDENCE_RETRIEVE: self._evidence_retrieve,
            ToolName.FACT_MINT: self._fact_mint,
            ToolName.FACT_VALIDATE: self._fact_validate,
            ToolName.FACT_SEAL: self._fact_seal,
            ToolName.FACT_DISPUTE: self._fact_dispute,
            ToolName.FACT_EXPORT: self._fact_export,
            ToolName.LEDGER_STATS: self._ledger_stats,
            ToolName.LEDGER_EVIDENCE: self._ledger_evidence,
            ToolName.LEDGER_FACTS: self._ledger_facts,
            ToolName.LEDGER_CONTRADICTIONS: self._ledger_contradictions,
            ToolName.CONTEXTUAL_TIMELINE: self._contextual_timeline,
            ToolName.CONTEXTUAL_TOPICS: self._contextual_topics,
        }
        for tool, route in PROXY_ROUTES.items():
            self._handlers[tool] = partial(self._proxy, route)

        missing = [tool.value for tool in ToolName if tool not in self._handlers]
        if missing:
            raise RuntimeError(f"No dispatch handler for tools: {', '.join(missing)}")

    async def dispatch(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        env: Mapping[str, str],
        *,
        base_url: str,
        auth_token: str | None = None,
    ) -> ToolResult:
        """Execute a tool call.

        Never raises: unknown tools, upstream failures and unexpected errors
        all come back as ``isError`` results.

        Args:
            name: Tool name from the tools/call request
            arguments: Tool arguments (anything but an object is treated as empty)
            env: Environment mapping holding service credentials and settings
            base_url: Base URL of the gateway's internal REST API
            auth_token: Caller's bearer token, forwarded to internal proxy calls

        Returns:
            Tool result envelope
        """
        tool = ToolName.lookup(name)
        if tool is None:
            return error_result(f"Unknown tool: {name}")

        args = arguments if isinstance(arguments, dict) else {}
        ctx = DispatchContext(env=env, base_url=base_url.rstrip("/"), auth_token=auth_token)
        try:
            return await self._handlers[tool](args, ctx)
        except Exception as e:
            logger.error(f"Tool execution error for {name}: {e}", exc_info=True)
            return error_result(f"Error executing {name}: {e}")

    # Proxy tools

    async def _proxy(
        self, route: ProxyRoute, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        path_args: dict[str, str] = {}
        for name in _placeholders(route.path):
            missing = _missing_argument(arguments, name)
            if missing:
                return missing
            path_args[name] = _segment(arguments[name])

        params = {
            param: arguments[arg]
            for param, arg in route.query_fields
            if arguments.get(arg) not in (None, "")
        }
        body = None
        if route.method != "GET":
            merged = {**route.defaults, **{k: v for k, v in arguments.items() if v is not None}}
            if route.body_fields is None:
                body = merged
            else:
                body = {name: merged.get(name) for name in route.body_fields}

        headers = ctx.auth_headers
        response = await fetch(
            self.http_client,
            route.method,
            f"{ctx.base_url}{route.path.format(**path_args)}",
            headers=headers or None,
            json_body=body,
            params=params,
        )
        return to_tool_result(response, route.label)

    # Identity

    async def _chittyid_token(self, ctx: DispatchContext) -> str | None:
        return await self.credentials.get_service_token(ctx.env, "chittyid")

    async def _id_mint(self, arguments: dict[str, Any], ctx: DispatchContext) -> ToolResult:
        token = await self._chittyid_token(ctx)
        if not token:
            return error_result(
                "Authentication required: No service token available for ChittyID"
            )
        response = await fetch(
            self.http_client,
            "POST",
            f"{self.endpoints.chittyid_url}/api/v2/chittyid/mint",
            headers=_bearer(token),
            json_body={
                "entity": arguments.get("entity_type"),
                "metadata": arguments.get("metadata"),
            },
        )
        return to_tool_result(response, "ChittyID")

    async def _id_validate(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        missing = _missing_argument(arguments, "chitty_id")
        if missing:
            return missing
        token = await self._chittyid_token(ctx)
        if not token:
            return error_result(
                "Authentication required: No service token available for ChittyID"
            )
        response = await fetch(
            self.http_client,
            "GET",
            f"{self.endpoints.chittyid_url}/api/v2/chittyid/validate/"
            f"{_segment(arguments['chitty_id'])}",
            headers=_bearer(token),
        )
        return to_tool_result(response, "ChittyID validation")

    # Ledger reads

    async def _ledger_get(
        self, path: str, params: dict[str, Any] | None = None
    ) -> ToolResult:
        response = await fetch(
            self.http_client, "GET", f"{self.endpoints.ledger_url}{path}", params=params
        )
        return to_tool_result(response, "Ledger", tolerant=True)

    async def _ledger_stats(self, arguments: dict[str, Any], ctx: DispatchContext) -> ToolResult:
        return await self._ledger_get("/api/dashboard/stats")

    async def _ledger_evidence(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        case_id = arguments.get("case_id")
        return await self._ledger_get("/api/evidence", {"caseId": case_id} if case_id else None)

    async def _ledger_facts(self, arguments: dict[str, Any], ctx: DispatchContext) -> ToolResult:
        missing = _missing_argument(arguments, "evidence_id")
        if missing:
            return missing
        return await self._ledger_get(
            f"/api/evidence/{_segment(arguments['evidence_id'])}/facts"
        )

    async def _ledger_contradictions(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        case_id = arguments.get("case_id")
        return await self._ledger_get(
            "/api/contradictions", {"caseId": case_id} if case_id else None
        )

    # Facts

    async def _fetch_evidence(self, evidence_id: Any) -> UpstreamResponse:
        return await fetch(
            self.http_client,
            "GET",
            f"{self.endpoints.ledger_url}/api/evidence/{_segment(evidence_id)}",
        )

    async def _ledger_post(self, path: str, body: dict[str, Any]) -> UpstreamResponse:
        return await fetch(
            self.http_client, "POST", f"{self.endpoints.ledger_url}{path}", json_body=body
        )

    async def _fact_mint(self, arguments: dict[str, Any], ctx: DispatchContext) -> ToolResult:
        missing = _missing_argument(arguments, "evidence_id", "text")
        if missing:
            return missing

        evidence_id = arguments["evidence_id"]
        evidence = await self._fetch_evidence(evidence_id)
        if not evidence.ok:
            return error_result(
                f'Fact minting blocked: evidence_id "{evidence_id}" not found in '
                f"ChittyLedger ({evidence.status_code}). Evidence must be ingested "
                f"through the pipeline before facts can be minted from it."
            )

        response = await self._ledger_post(
            "/api/facts",
            {
                "evidence_id": evidence_id,
                "case_id": arguments.get("case_id"),
                "text": arguments["text"],
                "confidence": arguments.get("confidence", 0.5),
                "source_reference": arguments.get("source_reference"),
                "category": arguments.get("category") or "other",
                "evidence_hash_at_mint": _evidence_hash(evidence),
            },
        )
        return to_tool_result(response, "Ledger", tolerant=True)

    async def _fact_validate(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        missing = _missing_argument(arguments, "fact_id")
        if missing:
            return missing

        corroborating = arguments.get("corroborating_evidence") or []
        if not isinstance(corroborating, list):
            return error_result("corroborating_evidence must be an array")
        for evidence_id in corroborating:
            check = await self._fetch_evidence(evidence_id)
            if not check.ok:
                return error_result(
                    f'Validation blocked: corroborating evidence "{evidence_id}" not '
                    f"found in ChittyLedger ({check.status_code}). All cited evidence "
                    f"must exist in the pipeline."
                )

        response = await self._ledger_post(
            f"/api/facts/{_segment(arguments['fact_id'])}/validate",
            {
                "validation_method": arguments.get("validation_method"),
                "corroborating_evidence": corroborating,
                "notes": arguments.get("notes"),
            },
        )
        return to_tool_result(response, "Ledger", tolerant=True)

    async def _check_permission(
        self, arguments: dict[str, Any], action: FactAction
    ) -> ToolResult | None:
        permission = await self.permission_checker.check_permission(
            arguments.get("actor_chitty_id"), action
        )
        if not permission.allowed:
            return error_result(f"Permission denied: {permission.reason}")
        return None

    async def _fact_seal(self, arguments: dict[str, Any], ctx: DispatchContext) -> ToolResult:
        missing = _missing_argument(arguments, "fact_id")
        if missing:
            return missing
        denied = await self._check_permission(arguments, FactAction.SEAL)
        if denied:
            return denied

        fact_id = arguments["fact_id"]
        actor = arguments.get("actor_chitty_id")
        response = await self._ledger_post(
            f"/api/facts/{_segment(fact_id)}/seal",
            {"sealed_by": actor, "seal_reason": arguments.get("seal_reason")},
        )
        result = tolerant_body(response, "Ledger")

        # The seal stands even when the proof job cannot be queued.
        if response.ok and isinstance(result, dict):
            warning = await self._enqueue_proof(fact_id, result, actor)
            if warning:
                result["proof_queue_warning"] = warning
        return json_result(result, is_error=not response.ok)

    async def _enqueue_proof(
        self, fact_id: Any, sealed: dict[str, Any], signer: str | None
    ) -> str | None:
        if self.proof_queue is None:
            logger.warning(f"Proof queue not configured; fact {fact_id} sealed without proof")
            return PROOF_QUEUE_MISSING_WARNING
        try:
            await self.proof_queue.send(
                {
                    "fact_id": fact_id,
                    "fact_text": sealed.get("text"),
                    "evidence_chain": sealed.get("evidence_chain") or [],
                    "signer_chitty_id": signer,
                }
            )
        except Exception as e:
            logger.error(f"Proof queue send failed for {fact_id} (seal succeeded): {e}")
            return PROOF_QUEUE_FAILED_WARNING
        return None

    async def _fact_dispute(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        missing = _missing_argument(arguments, "fact_id", "reason")
        if missing:
            return missing
        denied = await self._check_permission(arguments, FactAction.DISPUTE)
        if denied:
            return denied

        counter_evidence = arguments.get("counter_evidence_ids") or []
        if not isinstance(counter_evidence, list):
            return error_result("counter_evidence_ids must be an array")
        for evidence_id in counter_evidence:
            check = await self._fetch_evidence(evidence_id)
            if not check.ok:
                return error_result(
                    f'Dispute blocked: counter evidence "{evidence_id}" not found in '
                    f"ChittyLedger ({check.status_code})."
                )

        response = await self._ledger_post(
            f"/api/facts/{_segment(arguments['fact_id'])}/dispute",
            {
                "reason": arguments["reason"],
                "challenger_chitty_id": arguments.get("challenger_chitty_id")
                or arguments.get("actor_chitty_id"),
                "counter_evidence_ids": counter_evidence,
            },
        )
        return to_tool_result(response, "Ledger", tolerant=True)

    async def _fact_export(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        missing = _missing_argument(arguments, "fact_id")
        if missing:
            return missing
        export_format = arguments.get("format") or "json"
        if export_format not in ("json", "pdf"):
            return error_result(f"Unsupported export format: {export_format}")
        denied = await self._check_permission(arguments, FactAction.EXPORT)
        if denied:
            return denied

        fact_id = arguments["fact_id"]
        response = await fetch(
            self.http_client,
            "GET",
            f"{self.endpoints.ledger_url}/api/facts/{_segment(fact_id)}/export",
        )
        if export_format == "json":
            return to_tool_result(response, "Ledger", tolerant=True)

        if not response.ok:
            return error_result(
                f"Export failed: fact {fact_id} not found ({response.status_code})"
            )
        fact = response.body if response.is_json and isinstance(response.body, dict) else None
        if fact is None:
            return error_result(
                f"Export failed: ledger returned an unreadable record for fact {fact_id}"
            )
        proof_id = fact.get("proof_id")
        if not proof_id:
            return error_result(
                "PDF export requires a sealed fact with a minted proof. "
                f"Current proof_status: {fact.get('proof_status') or 'NONE'}"
            )

        if self.proof_client is None:
            return error_result("PDF generation failed: CHITTY_PROOF_TOKEN is not configured")
        rendered = await self.proof_client.export_pdf(proof_id)
        if isinstance(rendered, ProofError):
            return error_result(f"PDF generation failed: {rendered.message}")

        if self.file_store is None:
            return error_result(
                "PDF export failed: export storage (EXPORTS_DIR) is not configured."
            )
        export_path = f"facts/{_segment(fact_id)}/{int(time.time() * 1000)}.pdf"
        try:
            await run_in_threadpool(
                self.file_store.put,
                f"exports/{export_path}",
                rendered.body,
                rendered.content_type,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Storing PDF export for {fact_id} failed: {e}")
            return error_result(f"PDF generated but storage failed: {e}")

        return json_result(
            {
                "fact_id": fact_id,
                "format": "pdf",
                "download_url": f"{ctx.base_url}/api/v1/exports/{export_path}",
                "proof_id": proof_id,
                "verification_url": fact.get("verification_url"),
            }
        )

    # Contextual

    async def _contextual_timeline(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        params = {
            param: arguments[arg]
            for param, arg in (
                ("party", "party"),
                ("start", "start_date"),
                ("end", "end_date"),
                ("source", "source"),
            )
            if arguments.get(arg)
        }
        response = await fetch(
            self.http_client,
            "GET",
            f"{self.endpoints.contextual_url}/api/messages",
            params=params,
        )
        return to_tool_result(response, "Contextual", tolerant=True)

    async def _contextual_topics(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        response = await fetch(
            self.http_client,
            "POST",
            f"{self.endpoints.contextual_url}/api/topics",
            json_body={"query": arguments.get("query")},
        )
        return to_tool_result(response, "Contextual", tolerant=True)

    # Evidence search

    async def _search(
        self, arguments: dict[str, Any], ctx: DispatchContext, max_results: int
    ) -> UpstreamResponse | ToolResult:
        account_id = ctx.env.get("CF_ACCOUNT_ID") or ctx.env.get("CHITTYOS_ACCOUNT_ID")
        if not account_id:
            return error_result(
                "AI Search not configured: CF_ACCOUNT_ID or CHITTYOS_ACCOUNT_ID not set."
            )
        token = ctx.env.get("AI_SEARCH_TOKEN")
        if not token:
            return error_result("AI Search not configured: AI_SEARCH_TOKEN secret not set.")
        missing = _missing_argument(arguments, "query")
        if missing:
            return missing

        return await fetch(
            self.http_client,
            "POST",
            f"{self.endpoints.search_api_url}/accounts/{_segment(account_id)}"
            f"/ai-search/instances/{self.endpoints.search_instance}/search",
            headers=_bearer(token),
            json_body={
                "messages": [{"role": "user", "content": arguments["query"]}],
                "max_num_results": max_results,
            },
        )

    async def _evidence_search(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        response = await self._search(arguments, ctx, SEARCH_DEFAULT_RESULTS)
        if not isinstance(response, UpstreamResponse):
            return response

        data = response.body if response.is_json else None
        if not isinstance(data, dict) or not data.get("success"):
            return error_result(
                f"AI Search error ({response.status_code}): "
                f"{response.text[:ERROR_TEXT_LIMIT]}"
            )

        chunks = (data.get("result") or {}).get("chunks") or []
        shown = chunks[:SEARCH_DISPLAY_RESULTS]
        if not shown:
            return text_result("No matching documents found.")

        lines = [f"Found {len(chunks)} matching documents:"]
        for chunk in shown:
            filename = (chunk.get("item") or {}).get("key") or chunk.get("filename") or "unknown"
            snippet = (chunk.get("text") or "")[:SNIPPET_LENGTH].replace("\n", " ")
            lines.append(f"\n[{float(chunk.get('score') or 0):.3f}] {filename}\n  {snippet}")
        return text_result("\n".join(lines))

    async def _evidence_retrieve(
        self, arguments: dict[str, Any], ctx: DispatchContext
    ) -> ToolResult:
        max_results = arguments.get("max_num_results") or SEARCH_DEFAULT_RESULTS
        response = await self._search(arguments, ctx, max_results)
        if not isinstance(response, UpstreamResponse):
            return response
        if not response.is_json:
            return error_result(
                f"AI Search retrieve error ({response.status_code}): "
                f"{response.text[:ERROR_TEXT_LIMIT]}"
            )
        return json_result(response.body, is_error=not response.ok)
