"""Tool catalog served by tools/list.

Every tool the gateway can dispatch is a member of ``ToolName``; the catalog
below is the only place tool schemas are declared.
"""

from enum import Enum
from typing import Any

from mcp.types import Tool, ToolAnnotations


class ToolName(str, Enum):
    """Closed set of tools the dispatcher knows how to route."""

    # Identity
    ID_MINT = "chitty_id_mint"
    ID_VALIDATE = "chitty_id_validate"

    # Cases
    CASE_CREATE = "chitty_case_create"
    CASE_GET = "chitty_case_get"

    # Evidence
    EVIDENCE_INGEST = "chitty_evidence_ingest"
    EVIDENCE_VERIFY = "chitty_evidence_verify"
    EVIDENCE_SEARCH = "chitty_evidence_search"
    EVIDENCE_RETRIEVE = "chitty_evidence_retrieve"

    # Fact governance
    FACT_MINT = "chitty_fact_mint"
    FACT_VALIDATE = "chitty_fact_validate"
    FACT_SEAL = "chitty_fact_seal"
    FACT_DISPUTE = "chitty_fact_dispute"
    FACT_EXPORT = "chitty_fact_export"

    # Ledger
    LEDGER_STATS = "chitty_ledger_stats"
    LEDGER_EVIDENCE = "chitty_ledger_evidence"
    LEDGER_FACTS = "chitty_ledger_facts"
    LEDGER_CONTRADICTIONS = "chitty_ledger_contradictions"

    # Finance
    FINANCE_CONNECT_BANK = "chitty_finance_connect_bank"
    FINANCE_ANALYZE = "chitty_finance_analyze"
    FINANCE_ENTITIES = "chitty_finance_entities"
    FINANCE_BALANCES = "chitty_finance_balances"
    FINANCE_TRANSACTIONS = "chitty_finance_transactions"
    FINANCE_CASH_FLOW = "chitty_finance_cash_flow"
    FINANCE_INTER_ENTITY = "chitty_finance_inter_entity"
    FINANCE_DETECT_TRANSFERS = "chitty_finance_detect_transfers"
    FINANCE_FLOW_OF_FUNDS = "chitty_finance_flow_of_funds"
    FINANCE_SYNC = "chitty_finance_sync"

    # Intelligence and context
    INTELLIGENCE_ANALYZE = "chitty_intelligence_analyze"
    CONTEXT_RESOLVE = "context_resolve"
    CONTEXT_RESTORE = "context_restore"
    CONTEXT_COMMIT = "context_commit"
    CONTEXT_CHECK = "context_check"
    CONTEXT_CHECKPOINT = "context_checkpoint"
    CONTEXTUAL_TIMELINE = "chitty_contextual_timeline"
    CONTEXTUAL_TOPICS = "chitty_contextual_topics"

    # Memory
    MEMORY_PERSIST = "chitty_memory_persist"
    MEMORY_RECALL = "chitty_memory_recall"

    # Platform
    CREDENTIAL_RETRIEVE = "chitty_credential_retrieve"
    CREDENTIAL_AUDIT = "chitty_credential_audit"
    SERVICES_STATUS = "chitty_services_status"
    ECOSYSTEM_AWARENESS = "chitty_ecosystem_awareness"
    CHRONICLE_LOG = "chitty_chronicle_log"
    SYNC_DATA = "chitty_sync_data"

    # Integrations
    NOTION_QUERY = "chitty_notion_query"
    OPENAI_CHAT = "chitty_openai_chat"
    NEON_QUERY = "chitty_neon_query"

    @classmethod
    def lookup(cls, name: str | None) -> "ToolName | None":
        """Return the member for ``name`` or None for an unknown tool."""
        try:
            return cls(name)
        except ValueError:
            return None


READ_ONLY_TOOLS: frozenset[ToolName] = frozenset(
    {
        ToolName.ID_VALIDATE,
        ToolName.CASE_GET,
        ToolName.EVIDENCE_SEARCH,
        ToolName.EVIDENCE_RETRIEVE,
        ToolName.LEDGER_STATS,
        ToolName.LEDGER_EVIDENCE,
        ToolName.LEDGER_FACTS,
        ToolName.LEDGER_CONTRADICTIONS,
        ToolName.FINANCE_ENTITIES,
        ToolName.FINANCE_BALANCES,
        ToolName.FINANCE_TRANSACTIONS,
        ToolName.FINANCE_CASH_FLOW,
        ToolName.FINANCE_INTER_ENTITY,
        ToolName.FINANCE_FLOW_OF_FUNDS,
        ToolName.CONTEXT_RESTORE,
        ToolName.CONTEXT_CHECK,
        ToolName.CONTEXTUAL_TIMELINE,
        ToolName.CONTEXTUAL_TOPICS,
        ToolName.MEMORY_RECALL,
        ToolName.CREDENTIAL_AUDIT,
        ToolName.SERVICES_STATUS,
        ToolName.ECOSYSTEM_AWARENESS,
    }
)

_STRING = {"type": "string"}
_DATE = {"type": "string", "format": "date"}
_DATE_RANGE = {
    "type": "object",
    "properties": {
        "start": {"type": "string", "format": "date-time"},
        "end": {"type": "string", "format": "date-time"},
    },
}


def _string(description: str) -> dict[str, Any]:
    return {"type": "string", "description": description}


def _tool(
    name: ToolName,
    description: str,
    properties: dict[str, Any] | None = None,
    required: list[str] | None = None,
) -> Tool:
    input_schema: dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        input_schema["required"] = required
    return Tool(
        name=name.value,
        description=description,
        inputSchema=input_schema,
        annotations=ToolAnnotations(readOnlyHint=name in READ_ONLY_TOOLS),
    )


MCP_TOOLS: list[Tool] = [
    _tool(
        ToolName.ID_MINT,
        "Mint a new ChittyID for any canonical entity type: Person (P), Location (L), "
        "Thing (T), Event (E), or Authority (A).",
        {
            "entity_type": {
                "type": "string",
                "enum": ["P", "L", "T", "E", "A"],
                "description": "Canonical entity type code. P=Person, L=Location, "
                "T=Thing, E=Event, A=Authority.",
            },
            "characterization": _string(
                "Characterization within entity type (e.g., Natural/Synthetic/Legal for Person)"
            ),
            "metadata": {
                "type": "object",
                "description": "Optional metadata (name, jurisdiction, etc.)",
                "properties": {
                    "name": _STRING,
                    "jurisdiction": _STRING,
                    "description": _STRING,
                },
            },
        },
        ["entity_type"],
    ),
    _tool(
        ToolName.ID_VALIDATE,
        "Validate a ChittyID format and verify it exists in the registry.",
        {"chitty_id": _string("ChittyID to validate (format: VV-G-LLL-SSSS-T-YM-C-X)")},
        ["chitty_id"],
    ),
    _tool(
        ToolName.CASE_CREATE,
        "Create a new legal case with parties, jurisdiction, and case type.",
        {
            "case_type": _string("Type of legal case (civil, criminal, family, etc.)"),
            "parties": {
                "type": "array",
                "description": "Array of party ChittyIDs with roles",
                "items": {
                    "type": "object",
                    "properties": {
                        "chitty_id": _STRING,
                        "role": {
                            "type": "string",
                            "enum": [
                                "plaintiff",
                                "defendant",
                                "witness",
                                "attorney",
                                "judge",
                            ],
                        },
                    },
                },
            },
            "jurisdiction": _STRING,
            "description": _STRING,
        },
        ["case_type", "parties"],
    ),
    _tool(
        ToolName.CASE_GET,
        "Retrieve full case details including parties, evidence, timeline, and status.",
        {"case_id": _string("ChittyID of the case")},
        ["case_id"],
    ),
    _tool(
        ToolName.EVIDENCE_INGEST,
        "Ingest evidence with chain of custody tracking. Supports documents, media, "
        "and digital artifacts.",
        {
            "case_id": _STRING,
            "evidence_type": {
                "type": "string",
                "enum": ["document", "photo", "video", "audio", "digital"],
            },
            "content_url": _string("URL to evidence content (or base64 data)"),
            "metadata": {
                "type": "object",
                "properties": {
                    "source": _STRING,
                    "timestamp": _STRING,
                    "location": _STRING,
                    "chain_of_custody": {"type": "array"},
                },
            },
        },
        ["case_id", "evidence_type", "content_url"],
    ),
    _tool(
        ToolName.EVIDENCE_VERIFY,
        "Verify evidence authenticity and integrity.",
        {"evidence_id": _STRING},
        ["evidence_id"],
    ),
    _tool(
        ToolName.EVIDENCE_SEARCH,
        "Semantic search over legal evidence documents. Returns ranked document "
        "chunks with relevance scores.",
        {"query": _string("Natural language search query")},
        ["query"],
    ),
    _tool(
        ToolName.EVIDENCE_RETRIEVE,
        "Retrieve matching evidence documents by semantic similarity without "
        "generating a summary.",
        {
            "query": _string("Natural language search query"),
            "max_num_results": {
                "type": "number",
                "description": "Maximum number of results (default: 10)",
                "default": 10,
            },
        },
        ["query"],
    ),
    _tool(
        ToolName.FACT_MINT,
        "Mint a new atomic fact from evidence. Creates a fact record in ChittyLedger "
        "with 'draft' status. The cited evidence must already exist in the ledger.",
        {
            "evidence_id": _string("Evidence item ID the fact is extracted from"),
            "case_id": _string("Case ID the fact belongs to"),
            "text": _string("The atomic fact statement (single verifiable claim)"),
            "confidence": {
                "type": "number",
                "minimum": 0,
                "maximum": 1,
                "description": "Confidence score 0.0-1.0 (default: 0.5)",
            },
            "source_reference": _string(
                "Page number, paragraph, or location within the evidence document"
            ),
            "category": {
                "type": "string",
                "enum": [
                    "financial",
                    "temporal",
                    "identity",
                    "property",
                    "legal",
                    "communication",
                    "other",
                ],
                "description": "Fact category for classification",
            },
        },
        ["evidence_id", "text"],
    ),
    _tool(
        ToolName.FACT_VALIDATE,
        "Validate a draft fact against corroborating evidence, moving it from "
        "'draft' to 'verified'.",
        {
            "fact_id": _string("Fact ID to validate"),
            "validation_method": {
                "type": "string",
                "enum": [
                    "cross_reference",
                    "document_match",
                    "witness_corroboration",
                    "expert_review",
                ],
                "description": "Method used to validate the fact",
            },
            "corroborating_evidence": {
                "type": "array",
                "items": _STRING,
                "description": "Array of evidence IDs that corroborate this fact",
            },
            "notes": _string("Validation notes or reasoning"),
        },
        ["fact_id", "validation_method"],
    ),
    _tool(
        ToolName.FACT_SEAL,
        "Seal a verified fact permanently, triggering asynchronous ChittyProof "
        "minting. Requires Authority entity type with INSTITUTIONAL trust level (4+).",
        {
            "fact_id": _string("Fact ID to seal"),
            "actor_chitty_id": _string("ChittyID of the authority performing the seal"),
            "seal_reason": _string("Reason for sealing the fact"),
        },
        ["fact_id", "actor_chitty_id"],
    ),
    _tool(
        ToolName.FACT_DISPUTE,
        "Dispute a verified or sealed fact. Requires ENHANCED trust level (2+).",
        {
            "fact_id": _string("Fact ID to dispute"),
            "reason": _string("Reason for the dispute"),
            "actor_chitty_id": _string("ChittyID of the entity filing the dispute"),
            "challenger_chitty_id": _string(
                "ChittyID of the challenger (defaults to actor)"
            ),
            "counter_evidence_ids": {
                "type": "array",
                "items": _STRING,
                "description": "Evidence IDs that contradict this fact",
            },
        },
        ["fact_id", "reason", "actor_chitty_id"],
    ),
    _tool(
        ToolName.FACT_EXPORT,
        "Export a fact with its full proof bundle. JSON or PDF format.",
        {
            "fact_id": _string("Fact ID to export"),
            "format": {
                "type": "string",
                "enum": ["json", "pdf"],
                "description": "Export format",
            },
            "actor_chitty_id": _string("ChittyID of the requesting entity"),
        },
        ["fact_id", "format", "actor_chitty_id"],
    ),
    _tool(
        ToolName.LEDGER_STATS,
        "Get dashboard statistics from ChittyLedger: total cases, evidence items, "
        "facts, contradictions, and verification rates.",
    ),
    _tool(
        ToolName.LEDGER_EVIDENCE,
        "Query evidence items from ChittyLedger, optionally filtered by case ID.",
        {"case_id": _string("Optional case ID to filter evidence")},
    ),
    _tool(
        ToolName.LEDGER_FACTS,
        "Get atomic facts extracted from a specific evidence item.",
        {"evidence_id": _string("Evidence item ID to get facts for")},
        ["evidence_id"],
    ),
    _tool(
        ToolName.LEDGER_CONTRADICTIONS,
        "Get detected contradictions across evidence items.",
        {"case_id": _string("Optional case ID to filter contradictions")},
    ),
    _tool(
        ToolName.FINANCE_CONNECT_BANK,
        "Connect a bank account for financial analysis and transaction monitoring.",
        {
            "chitty_id": _string("Entity ChittyID"),
            "institution": _STRING,
            "account_type": {
                "type": "string",
                "enum": ["checking", "savings", "credit", "investment"],
            },
        },
        ["chitty_id", "institution"],
    ),
    _tool(
        ToolName.FINANCE_ANALYZE,
        "Analyze financial transactions for a ChittyID. Detects patterns, anomalies, "
        "and risks.",
        {"chitty_id": _STRING, "time_range": _DATE_RANGE},
        ["chitty_id"],
    ),
    _tool(
        ToolName.FINANCE_ENTITIES,
        "List financial entities with their account mappings from connected banks.",
    ),
    _tool(
        ToolName.FINANCE_BALANCES,
        "Get current balances for a financial entity across all connected accounts.",
        {"entity": _string("Entity identifier")},
        ["entity"],
    ),
    _tool(
        ToolName.FINANCE_TRANSACTIONS,
        "Query transactions for an entity within a date range.",
        {
            "entity": _string("Entity identifier"),
            "start": {**_DATE, "description": "Start date (YYYY-MM-DD)"},
            "end": {**_DATE, "description": "End date (YYYY-MM-DD)"},
        },
        ["entity"],
    ),
    _tool(
        ToolName.FINANCE_CASH_FLOW,
        "Generate a cash flow summary for an entity over a date range.",
        {"entity": _string("Entity identifier"), "start": _DATE, "end": _DATE},
        ["entity"],
    ),
    _tool(
        ToolName.FINANCE_INTER_ENTITY,
        "Show inter-entity transfers between accounts.",
        {"entity": _string("Entity identifier"), "start": _DATE, "end": _DATE},
    ),
    _tool(
        ToolName.FINANCE_DETECT_TRANSFERS,
        "Auto-detect potential inter-entity transfers using amount matching and "
        "date proximity.",
        {
            "start": _DATE,
            "end": _DATE,
            "threshold_days": {
                "type": "number",
                "description": "Max days between matching transactions (default: 3)",
            },
        },
    ),
    _tool(
        ToolName.FINANCE_FLOW_OF_FUNDS,
        "Generate a source-and-use-of-funds report across all entities.",
        {"start": _DATE, "end": _DATE},
    ),
    _tool(
        ToolName.FINANCE_SYNC,
        "Trigger a bank sync to pull latest transactions into the finance database.",
    ),
    _tool(
        ToolName.INTELLIGENCE_ANALYZE,
        "Deep contextual analysis. Extracts entities, sentiment, relationships, and "
        "legal/financial implications.",
        {
            "content": _string("Content to analyze (text, document, transcript)"),
            "depth": {
                "type": "string",
                "enum": ["quick", "standard", "deep"],
                "description": "Analysis depth level",
            },
            "context": {
                "type": "object",
                "description": "Additional context (case_id, party_ids, etc.)",
            },
        },
        ["content"],
    ),
    _tool(
        ToolName.CONTEXT_RESOLVE,
        "Resolve a session to its context entity by project path, platform, and "
        "support type.",
        {
            "project_path": _string("Path to the project directory"),
            "platform": _string("Platform identifier (e.g., claude_code, chatgpt)"),
            "support_type": _string("Support type (e.g., development, operations)"),
            "organization": _string("Organization name"),
        },
        ["project_path"],
    ),
    _tool(
        ToolName.CONTEXT_RESTORE,
        "Restore a previous context session for a ChittyID.",
        {
            "chitty_id": _string("ChittyID of the context entity"),
            "project_slug": _string("Project slug to filter by"),
        },
        ["chitty_id"],
    ),
    _tool(
        ToolName.CONTEXT_COMMIT,
        "Commit session context (metrics, decisions) to the context ledger.",
        {
            "session_id": _string("Current session ID"),
            "chitty_id": _string("ChittyID of the context entity"),
            "project_slug": _string("Project slug"),
            "metrics": {"type": "object", "description": "Session metrics to commit"},
            "decisions": {
                "type": "array",
                "description": "Decisions made during session",
            },
        },
        ["session_id", "chitty_id"],
    ),
    _tool(
        ToolName.CONTEXT_CHECK,
        "Check the current state and health of a context entity.",
        {"chitty_id": _string("ChittyID of the context entity")},
        ["chitty_id"],
    ),
    _tool(
        ToolName.CONTEXT_CHECKPOINT,
        "Create a named checkpoint for a context entity's state.",
        {
            "chitty_id": _string("ChittyID of the context entity"),
            "project_slug": _string("Project slug"),
            "name": _string("Checkpoint name"),
            "state": {"type": "object", "description": "State snapshot to save"},
        },
        ["chitty_id", "name"],
    ),
    _tool(
        ToolName.CONTEXTUAL_TIMELINE,
        "Get the unified communication timeline across messaging, email, and "
        "signature sources.",
        {
            "party": _string("Filter by party name, email, or phone number"),
            "start_date": _string("Start date (ISO 8601)"),
            "end_date": _string("End date (ISO 8601)"),
            "source": {
                "type": "string",
                "enum": ["imessage", "whatsapp", "email", "docusign", "openphone"],
                "description": "Filter by communication source",
            },
        },
    ),
    _tool(
        ToolName.CONTEXTUAL_TOPICS,
        "Get topic clusters across all communication sources.",
        {"query": _string("Topic or keyword to search for")},
    ),
    _tool(
        ToolName.MEMORY_PERSIST,
        "Persist an interaction to long-term memory.",
        {
            "session_id": _STRING,
            "interaction": {
                "type": "object",
                "properties": {
                    "type": _STRING,
                    "content": _STRING,
                    "entities": {"type": "array"},
                    "importance": {
                        "type": "string",
                        "enum": ["low", "medium", "high", "critical"],
                    },
                },
            },
        },
        ["session_id", "interaction"],
    ),
    _tool(
        ToolName.MEMORY_RECALL,
        "Recall relevant context from long-term memory by semantic search.",
        {
            "query": _string("Semantic search query"),
            "session_id": _STRING,
            "limit": {"type": "number", "default": 10},
        },
        ["query"],
    ),
    _tool(
        ToolName.CREDENTIAL_RETRIEVE,
        "Retrieve credentials from the vault with risk-based access control.",
        {
            "credential_type": {
                "type": "string",
                "enum": ["service_token", "api_key", "oauth_token", "database_url"],
            },
            "target": _string("Target service (chittyid, notion, openai, etc.)"),
            "purpose": _string("Purpose of credential usage"),
        },
        ["credential_type", "target", "purpose"],
    ),
    _tool(
        ToolName.CREDENTIAL_AUDIT,
        "Audit credential access patterns and security posture.",
        {
            "target": _STRING,
            "time_range": {
                "type": "object",
                "properties": {"start": _STRING, "end": _STRING},
            },
        },
    ),
    _tool(
        ToolName.SERVICES_STATUS,
        "Check health status of all ChittyOS ecosystem services.",
        {
            "services": {
                "type": "array",
                "items": _STRING,
                "description": "Optional: specific services to check",
            }
        },
    ),
    _tool(
        ToolName.ECOSYSTEM_AWARENESS,
        "Get ecosystem awareness including service health, credential status, and "
        "anomaly detection.",
        {
            "include_credentials": {"type": "boolean", "default": False},
            "include_anomalies": {"type": "boolean", "default": True},
        },
    ),
    _tool(
        ToolName.CHRONICLE_LOG,
        "Create an audit log entry in ChittyChronicle.",
        {
            "event_type": _STRING,
            "entity_id": _STRING,
            "description": _STRING,
            "metadata": {"type": "object"},
        },
        ["event_type", "description"],
    ),
    _tool(
        ToolName.SYNC_DATA,
        "Synchronize data across ChittyOS services.",
        {
            "source_service": _STRING,
            "target_service": _STRING,
            "entity_ids": {"type": "array"},
        },
        ["source_service", "target_service"],
    ),
    _tool(
        ToolName.NOTION_QUERY,
        "Query Notion databases through the gateway proxy.",
        {"database_id": _STRING, "filter": {"type": "object"}, "sorts": {"type": "array"}},
        ["database_id"],
    ),
    _tool(
        ToolName.OPENAI_CHAT,
        "Chat with OpenAI through the gateway proxy.",
        {
            "messages": {"type": "array"},
            "model": {"type": "string", "default": "gpt-4"},
            "temperature": {"type": "number", "default": 0.7},
        },
        ["messages"],
    ),
    _tool(
        ToolName.NEON_QUERY,
        "Execute SQL queries against the Neon database through the gateway proxy.",
        {"sql": _STRING, "params": {"type": "array"}},
        ["sql"],
    ),
]


def list_tools() -> list[dict[str, Any]]:
    """Serialize the catalog the way tools/list returns it."""
    return [
        tool.model_dump(by_alias=True, exclude_none=True, mode="json")
        for tool in MCP_TOOLS
    ]
