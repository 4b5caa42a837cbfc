"""ELF MCP Server -- stdio-based MCP server exposing the memory tools."""

import asyncio
import atexit
import logging
import sys

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from elfmem.server.handlers import HANDLERS
from elfmem.server.tool_schemas import TOOL_SCHEMAS

logger = logging.getLogger("elfmem.server")

server = Server("elf-memory")


def _close_on_exit():
    """Close stores when the server process exits."""
    from elfmem.bridge import reset_memory

    reset_memory()


atexit.register(_close_on_exit)


@server.list_tools()
async def list_tools() -> list[Tool]:
    """Return all ELF tools."""
    return [
        Tool(
            name=schema["name"],
            description=schema["description"],
            inputSchema=schema["inputSchema"],
        )
        for schema in TOOL_SCHEMAS
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Dispatch tool call to the appropriate handler."""
    handler = HANDLERS.get(name)
    if not handler:
        return [TextContent(type="text", text=f"Unknown tool: {name}")]

    try:
        result = await handler(arguments or {})
        content_list = result.get("content", [{}])
        text = content_list[0].get("text", str(result)) if content_list else str(result)
        return [TextContent(type="text", text=text)]
    except Exception as e:
        logger.error("Tool %s failed: %s", name, e)
        return [TextContent(type="text", text=f"Error in {name}: {e}")]


async def _prewarm() -> None:
    """Load the embedding model in the background so the first query is fast."""
    try:
        from elfmem.bridge import get_memory

        await get_memory().cache.init_async()
    except Exception as e:
        logger.info("Embedding prewarm skipped: %s", e)


async def main():
    """Entry point for the ELF MCP server."""
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    logger.info("Starting ELF MCP server...")

    # Keep a reference; unreferenced tasks can be garbage collected.
    _prewarm_task = asyncio.create_task(_prewarm())

    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


if __name__ == "__main__":
    asyncio.run(main())
