import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Body, FastAPI, Request

from feedcheck.main.config import ValidatorConfig
from feedcheck.main.tools.validator import FeedValidator, build_validator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One validator (and one HTTP client) per process, closed on shutdown.
    app.state.validator = build_validator(ValidatorConfig.from_env())
    try:
        yield
    finally:
        await app.state.validator.aclose()


app = FastAPI(
    title="feedcheck API",
    description="Validate RSS/Atom/RDF feed URLs and discover feeds on websites.",
    version="0.1.0",
    docs_url="/docs",        # Swagger UI
    redoc_url="/redoc",      # ReDoc UI
    openapi_url="/openapi.json",
    lifespan=lifespan,
)


def _validator(request: Request) -> FeedValidator:
    return request.app.state.validator


@app.get("/", tags=["Root"], summary="API root")
async def read_root():
    return {"message": "Welcome to the feedcheck FastAPI server!"}


@app.post("/validate", tags=["Validation"], summary="Validate a feed URL",
          description="Fetch the URL (direct, then through a relay if needed) and check it is a feed.")
async def validate(url: str, request: Request) -> Dict[str, Any]:
    result = await _validator(request).validate(url)
    return result.to_dict()


@app.post(
    "/validateWithDiscovery",
    tags=["Validation"],
    summary="Validate, discovering feeds when needed",
    description=(
        "Validate ``url``; if it is not a feed, search the website for feeds. "
        "A single discovered feed is adopted; several come back with status "
        "``discovery_required`` and the candidates for the caller to choose from."
    ),
)
async def validate_with_discovery(url: str, request: Request) -> Dict[str, Any]:
    result = await _validator(request).validate_with_discovery(url)
    return result.to_dict()


@app.post("/validateMany", tags=["Validation"], summary="Validate several feed URLs",
          description="Validate every URL in the JSON list body concurrently; results keep input order.")
async def validate_many(request: Request, urls: List[str] = Body(...)) -> List[Dict[str, Any]]:
    results = await _validator(request).validate_many(urls)
    return [r.to_dict() for r in results]


@app.post("/revalidate", tags=["Validation"], summary="Validate again, ignoring the cache")
async def revalidate(url: str, request: Request) -> Dict[str, Any]:
    result = await _validator(request).revalidate(url)
    return result.to_dict()


@app.delete("/cache", tags=["Cache"], summary="Clear cached validation results")
async def clear_cache(request: Request) -> Dict[str, int]:
    return {"removed": _validator(request).clear_cache()}


@app.post(
    "/summary",
    tags=["Cache"],
    summary="Summarise validation state",
    description=(
        "Counts of valid/invalid/checking feeds for the URLs in the JSON list body, "
        "or for every cached validation when no body is sent."
    ),
)
async def summary(request: Request, urls: Optional[List[str]] = Body(default=None)) -> Dict[str, Any]:
    return _validator(request).get_summary(urls).to_dict()


@app.get("/cache/stats", tags=["Cache"], summary="Cache statistics")
async def cache_stats(request: Request) -> Dict[str, Any]:
    return _validator(request).cache_stats()


@app.get("/relays", tags=["Relays"], summary="Relay health statistics")
async def relays(request: Request) -> Dict[str, Dict[str, Any]]:
    return _validator(request).relay_stats()


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    # bind to localhost interface and enable reload for development
    uvicorn.run("feedcheck.app_server:app", host="127.0.0.1", port=8090, reload=True)


if __name__ == "__main__":
    main()
