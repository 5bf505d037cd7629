"""FastMCP server exposing feed validation tools.

Available tools:
* ``validate_feed(url: str) -> str`` - validate a feed URL and return the result as JSON.
* ``discover_feed(url: str) -> str`` - validate *url*, searching the website for feeds
  when it is not one itself.
* ``clear_validation_cache() -> str`` - drop every cached validation result.
"""

import json
import logging
from typing import Optional

from fastmcp import FastMCP

from feedcheck.main.config import ValidatorConfig
from feedcheck.main.tools.validator import FeedValidator, build_validator

logger = logging.getLogger(__name__)

mcp = FastMCP("feedcheck")

_validator: Optional[FeedValidator] = None


def _get_validator() -> FeedValidator:
    """Get or create the validator shared by all tool calls."""
    global _validator
    if _validator is None:
        _validator = build_validator(ValidatorConfig.from_env())
    return _validator


@mcp.tool
async def validate_feed(url: str) -> str:
    """Check that *url* is a reachable RSS, Atom or RDF feed.

    Returns the full validation result (status, title, attempts, error and
    suggestions) as a JSON string.
    """
    result = await _get_validator().validate(url)
    return json.dumps(result.to_dict())


@mcp.tool
async def discover_feed(url: str) -> str:
    """Validate *url*, and when it is a website rather than a feed, look for its feeds.

    If several feeds are found the status is ``discovery_required`` and
    ``discovered_candidates`` lists them, best first.
    """
    result = await _get_validator().validate_with_discovery(url)
    return json.dumps(result.to_dict())


@mcp.tool
async def clear_validation_cache() -> str:
    """Forget every cached validation and discovery result."""
    removed = _get_validator().clear_cache()
    return f"Cleared {removed} cached result(s)."


def main() -> None:
    """Entry point - start the FastMCP server on stdio transport."""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
