"""Unit tests for the tool catalog."""

from chitty_connect.mcp.tools import MCP_TOOLS, READ_ONLY_TOOLS, ToolName, list_tools


class TestToolCatalog:
    """Tests for the tools/list catalog."""

    def test_every_tool_is_listed_once(self):
        names = [tool.name for tool in MCP_TOOLS]
        assert len(names) == len(set(names))
        assert set(names) == {tool.value for tool in ToolName}

    def test_lookup(self):
        assert ToolName.lookup("chitty_fact_seal") is ToolName.FACT_SEAL
        assert ToolName.lookup("context_resolve") is ToolName.CONTEXT_RESOLVE
        assert ToolName.lookup("chitty_unknown") is None
        assert ToolName.lookup(None) is None

    def test_serialized_shape(self):
        tools = {tool["name"]: tool for tool in list_tools()}
        mint = tools["chitty_id_mint"]

        assert mint["inputSchema"]["type"] == "object"
        assert mint["inputSchema"]["required"] == ["entity_type"]
        assert mint["inputSchema"]["properties"]["entity_type"]["enum"] == [
            "P",
            "L",
            "T",
            "E",
            "A",
        ]
        assert mint["description"]

    def test_read_only_hint(self):
        tools = {tool["name"]: tool for tool in list_tools()}
        assert tools["chitty_ledger_stats"]["annotations"]["readOnlyHint"] is True
        assert tools["chitty_fact_seal"]["annotations"]["readOnlyHint"] is False

    def test_read_only_tools_are_catalogued(self):
        assert READ_ONLY_TOOLS <= set(ToolName)
        assert ToolName.FACT_MINT not in READ_ONLY_TOOLS
        assert ToolName.MEMORY_RECALL in READ_ONLY_TOOLS

    def test_required_fields_are_properties(self):
        for tool in list_tools():
            schema = tool["inputSchema"]
            for field_name in schema.get("required", []):
                assert field_name in schema["properties"], (tool["name"], field_name)
