"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Tuple

from fastmcp import FastMCP

from .services import expert_router
from .services.memory_management import MemoryManagementError
from .services.service_registry import ServiceRegistry, build_registry
from .utils.config import config
from .utils.logging_config import get_logger
from .utils.sqlite_client import SqliteError

logger = get_logger(__name__)


def create_mcp(registry: ServiceRegistry) -> FastMCP:
    """Create the MCP server exposing routing, memory search and the ledger."""
    mcp = FastMCP('Analysis Room')

    @mcp.tool()
    def route_message(message: str) -> Dict[str, Any]:
        """Show which experts would answer a message, in order.

        Args:
            message: User message

        Returns:
            Dictionary with selected experts, summary mode and override flags
        """
        if not message or not message.strip():
            raise ValueError('Message is required')

        decision = expert_router.select_experts(message)
        logger.debug(f'MCP route_message selected {[e.value for e in decision.experts]}')
        return {
            'experts': [expert.value for expert in decision.experts],
            'summaryMode': decision.summary_mode,
            'safetyTriggered': decision.safety_triggered,
            'directCalls': [expert.value for expert in decision.direct_calls],
            'overrideApplied': decision.override_applied,
            'clearsHistory': decision.clears_history,
        }

    @mcp.tool()
    def search_episodic_memories(query: str) -> List[Tuple[int, str]]:
        """Search episodic memories.

        Args:
            query: Natural language query

        Returns:
            List of tuples (memory_id, text)

        Raises:
            Exception: If search fails
        """
        if not query or not query.strip():
            return []

        try:
            memories = registry.memory.retrieve(query)
        except MemoryManagementError as e:
            logger.error(f'Memory management error in MCP search: {e}')
            raise Exception(f'Memory search failed: {e}')

        result = [(memory.id, memory.text) for memory in memories]
        logger.debug(f'MCP search returned {len(result)} memories')
        return result

    @mcp.tool()
    def list_acquired_items() -> List[Dict[str, Any]]:
        """List every item recorded in the acquired-items ledger."""
        try:
            return [item.to_dict() for item in registry.store.list_acquired_items()]
        except SqliteError as e:
            logger.error(f'Ledger read failed in MCP: {e}')
            raise Exception(f'Ledger read failed: {e}')

    return mcp


if __name__ == '__main__':
    mcp = create_mcp(build_registry(config))
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
