"""MCP server for faultkb.

Exposes the fault knowledge base to AI agents via the Model Context Protocol.
Agents can request diagnoses, search the configured web sources, and look up
known faults and suggestions.

Usage:
    uv run python -m faultkb.mcp_server [--db /path/to/faultkb.db]

Configure in an MCP client:
    {
      "mcpServers": {
        "faultkb": {
          "command": "uv",
          "args": ["run", "--directory", "/path/to/faultkb", "python", "-m", "faultkb.mcp_server"]
        }
      }
    }
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import anthropic
import mcp.server.stdio
import mcp.types as types
from mcp.server import Server

from faultkb.activity import ActivityLog, ToolCall
from faultkb.analysis.pipeline import DiagnosisPipeline
from faultkb.analysis.synthesizer import Synthesizer
from faultkb.config import Config
from faultkb.errors import FaultKBError, PersistenceFailed, SynthesisFailed
from faultkb.knowledge.models import AnalysisRequest
from faultkb.knowledge.retriever import KnowledgeRetriever
from faultkb.search.orchestrator import run_search
from faultkb.storage.db import get_connection
from faultkb.storage.repository import Repository


def _resolve_db_path() -> Path:
    """Find the database, checking CLI args, env var, then current directory."""
    for i, arg in enumerate(sys.argv):
        if arg == "--db" and i + 1 < len(sys.argv):
            return Path(sys.argv[i + 1])

    env_db = os.getenv("FAULTKB_DB_PATH")
    if env_db:
        return Path(env_db)

    return Path("faultkb.db")


DB_PATH = _resolve_db_path()

server = Server("faultkb")


@contextmanager
def _open_repo() -> Iterator[Repository]:
    if not DB_PATH.exists():
        raise FileNotFoundError(
            f"Database not found at {DB_PATH}. "
            "Run 'faultkb init' first, or set FAULTKB_DB_PATH."
        )
    conn = get_connection(DB_PATH)
    try:
        yield Repository(conn)
    finally:
        conn.close()


def _build_pipeline(repo: Repository, config: Config) -> DiagnosisPipeline:
    client = anthropic.Anthropic(
        api_key=config.anthropic_api_key,
        max_retries=config.llm_max_retries,
        timeout=config.llm_timeout,
    )
    return DiagnosisPipeline(
        repo,
        Synthesizer(client, model=config.model, timeout=config.llm_timeout),
        search=lambda query, timeout: run_search(repo, config, query, timeout),
    )


@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        types.Tool(
            name="analyze_fault",
            description=(
                "Diagnose a medical device fault. Combines similar known faults, the "
                "caller's uploaded documents and (optionally) web sources into a "
                "structured diagnosis: root cause, solution, parts, repair time and "
                "difficulty. Costs one query from the account's quota. "
                "Call find_similar_faults first if you only need existing answers."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "account_id": {"type": "integer", "description": "Caller's account id"},
                    "device_type": {"type": "string", "description": "e.g. 'Ventilator'"},
                    "manufacturer": {"type": "string"},
                    "model": {"type": "string"},
                    "fault_description": {"type": "string", "description": "What is wrong"},
                    "symptoms": {"type": "string"},
                    "error_codes": {"type": "string"},
                    "document_ids": {
                        "type": "array",
                        "items": {"type": "integer"},
                        "description": "Ids of the caller's uploaded documents to use as context",
                    },
                    "save_to_knowledge_base": {"type": "boolean", "default": True},
                    "search_web": {"type": "boolean", "default": False},
                },
                "required": ["account_id", "device_type", "manufacturer", "model", "fault_description"],
            },
        ),
        types.Tool(
            name="search_sources",
            description=(
                "Search every active web source (forums, manual repositories, vendor "
                "sites) for repair information. Returns ranked snippets with "
                "extracted parts, procedures and safety warnings. Pages that contain "
                "a repair procedure are added to the knowledge base."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "account_id": {"type": "integer"},
                    "query": {"type": "string", "description": "At least 3 characters"},
                    "device_type": {"type": "string"},
                    "timeout_seconds": {"type": "number"},
                },
                "required": ["account_id", "query"],
            },
        ),
        types.Tool(
            name="find_similar_faults",
            description=(
                "List known faults whose description shares words with the given one, "
                "most viewed first. Free; does not touch the quota."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "fault_description": {"type": "string"},
                    "limit": {"type": "integer", "default": 5},
                },
                "required": ["fault_description"],
            },
        ),
        types.Tool(
            name="get_fault",
            description="Get the full record of a known fault by id, including linked faults.",
            inputSchema={
                "type": "object",
                "properties": {"fault_id": {"type": "integer"}},
                "required": ["fault_id"],
            },
        ),
        types.Tool(
            name="get_suggestions",
            description=(
                "Most helpful known solutions for a device type and manufacturer."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "device_type": {"type": "string"},
                    "manufacturer": {"type": "string"},
                },
                "required": ["device_type", "manufacturer"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[types.TextContent]:
    start = time.time()
    call = ToolCall(name, arguments)
    result: list[types.TextContent] = []
    try:
        # Handlers block on HTTP and SQLite; the search path starts its own event loop.
        result = await asyncio.to_thread(_dispatch_tool, name, arguments)
        return result
    except FileNotFoundError as e:
        call.failed(e)
        result = [types.TextContent(type="text", text=f"Setup required: {e}")]
        return result
    except FaultKBError as e:
        call.failed(e)
        payload = e.to_dict()
        if isinstance(e, PersistenceFailed) and e.result is not None:
            payload["analysis"] = e.result.to_dict()
        result = [types.TextContent(type="text", text=json.dumps(payload, indent=2))]
        return result
    except Exception as e:
        call.failed(e)
        result = [types.TextContent(type="text", text=f"Error: {e}")]
        return result
    finally:
        duration_ms = int((time.time() - start) * 1000)
        result_text = result[0].text if result else ""
        call.finish(result_text, duration_ms)
        ActivityLog.for_database(DB_PATH).record(call)


def _dispatch_tool(name: str, arguments: dict) -> list[types.TextContent]:
    """Route a tool call to the appropriate handler."""
    if name == "analyze_fault":
        return _handle_analyze(arguments)
    elif name == "search_sources":
        return _handle_search(
            arguments["account_id"],
            arguments["query"],
            arguments.get("device_type", ""),
            arguments.get("timeout_seconds"),
        )
    elif name == "find_similar_faults":
        return _handle_similar(arguments["fault_description"], arguments.get("limit", 5))
    elif name == "get_fault":
        return _handle_get_fault(arguments["fault_id"])
    elif name == "get_suggestions":
        return _handle_suggestions(arguments["device_type"], arguments["manufacturer"])
    else:
        return [types.TextContent(type="text", text=f"Unknown tool: {name}")]


def _json(data) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


def _handle_analyze(arguments: dict) -> list[types.TextContent]:
    config = Config.load()
    if not config.anthropic_api_key:
        raise SynthesisFailed("Cannot analyze: ANTHROPIC_API_KEY not set.", retryable=False)

    request = AnalysisRequest(
        device_type=arguments["device_type"],
        manufacturer=arguments["manufacturer"],
        device_model=arguments["model"],
        fault_description=arguments["fault_description"],
        symptoms=arguments.get("symptoms", ""),
        error_codes=arguments.get("error_codes", ""),
        document_ids=arguments.get("document_ids", []),
        save_to_knowledge_base=arguments.get("save_to_knowledge_base", True),
        search_web=arguments.get("search_web", False),
    )
    with _open_repo() as repo:
        outcome = _build_pipeline(repo, config).analyze(arguments["account_id"], request)
    return _json(outcome.to_dict())


def _handle_search(
    account_id: int, query: str, device_type: str, timeout: float | None
) -> list[types.TextContent]:
    config = Config.load()
    with _open_repo() as repo:
        report = _build_pipeline(repo, config).search(
            account_id, query, device_type=device_type, timeout=timeout
        )
    return _json(report.to_dict())


def _handle_similar(description: str, limit: int) -> list[types.TextContent]:
    with _open_repo() as repo:
        matches = KnowledgeRetriever(repo).find_similar(description, limit=limit)
    if not matches:
        return [types.TextContent(type="text", text="No similar faults on record.")]
    return _json({"count": len(matches), "faults": matches})


def _handle_get_fault(fault_id: int) -> list[types.TextContent]:
    with _open_repo() as repo:
        record = repo.get_fault(fault_id, count_view=True)
    if record is None:
        return [types.TextContent(type="text", text=f"Fault {fault_id} not found.")]
    return _json(record)


def _handle_suggestions(device_type: str, manufacturer: str) -> list[types.TextContent]:
    with _open_repo() as repo:
        suggestions = KnowledgeRetriever(repo).suggestions(device_type, manufacturer)
    if not suggestions:
        return [types.TextContent(type="text", text="No suggestions for this device yet.")]
    return _json({"device_type": device_type, "manufacturer": manufacturer, "suggestions": suggestions})


async def main() -> None:
    async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


if __name__ == "__main__":
    asyncio.run(main())
