"""
Grounded web search client (Tavily) used by the context scout.
"""

from typing import Any, Dict, List

import httpx

from .config import WebSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class WebSearchError(Exception):
    """Custom exception for web search errors."""
    pass


class WebSearchClient:
    """Async search client. A missing API key makes every search fail fast."""

    def __init__(self, config: WebSearchConfig):
        """
        Initialize web search client.

        Args:
            config: WebSearchConfig instance with endpoint and credentials
        """
        self.config = config
        if config.api_key:
            logger.info(f'Initialized web search client for endpoint: {config.endpoint}')
        else:
            logger.info('Web search API key not configured; grounded search disabled')

    @property
    def enabled(self) -> bool:
        return bool(self.config.api_key)

    async def search(self, query: str) -> str:
        """Search the web and return the findings as plain text.

        Args:
            query: Natural language query

        Returns:
            Answer text followed by result snippets, one per line

        Raises:
            WebSearchError: If search is not configured or the request fails
        """
        if not self.enabled:
            raise WebSearchError('Web search API key is not configured')

        payload = {
            'api_key': self.config.api_key,
            'query': query,
            'max_results': self.config.max_results,
            'include_answer': True,
            'search_depth': 'basic',
        }

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(self.config.endpoint, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.warning(f'Web search request failed: {e}')
            raise WebSearchError(f'Web search failed: {e}')
        except ValueError as e:
            logger.warning(f'Web search returned invalid JSON: {e}')
            raise WebSearchError(f'Web search returned invalid JSON: {e}')

        if not isinstance(data, dict):
            logger.warning(f'Web search returned {type(data).__name__} instead of an object')
            raise WebSearchError('Web search returned an unexpected payload')

        findings = self._format_results(data)
        logger.debug(f'Web search returned {len(findings)} characters of findings')
        return findings

    @staticmethod
    def _format_results(data: Dict[str, Any]) -> str:
        lines: List[str] = []
        if data.get('answer'):
            lines.append(str(data['answer']))
        for result in data.get('results') or []:
            if not isinstance(result, dict):
                continue
            title = result.get('title', '')
            content = result.get('content', '')
            if title or content:
                lines.append(f'- {title}: {content}'.strip())
        return '\n'.join(lines)
