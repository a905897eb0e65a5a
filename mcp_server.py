#!/usr/bin/env python3
"""
MCP (Model Context Protocol) Server for the N8N Workflow Catalog
Exposes catalog sync, enrichment and search as REST endpoints and MCP tools.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ai_client import ChatClient, Embedder, build_embedder
from catalog_sync import sync_catalog
from config import Settings, configure_logging
from description_audit import audit_descriptions
from enrichment import (DescriptionTask, EmbeddingTask, EnrichmentScheduler, EnrichmentTask,
                        PaginationStrategy, SeoTask)
from exceptions import CatalogError
from semantic_search import SemanticSearch
from source_fetcher import GitHubSource
from workflow_db import WorkflowDatabase

logger = logging.getLogger(__name__)

SERVER_NAME = "N8N Workflow Catalog MCP"
SERVER_VERSION = "0.2.0"


class Services:
    """Lazily built clients shared by every request."""

    def __init__(self, settings: Optional[Settings] = None, db: Optional[WorkflowDatabase] = None,
                 source: Optional[GitHubSource] = None, chat: Optional[ChatClient] = None,
                 embedder: Optional[Embedder] = None):
        self.settings = settings or Settings()
        self._db = db
        self._source = source
        self._chat = chat
        self._embedder = embedder

    @property
    def db(self) -> WorkflowDatabase:
        if self._db is None:
            self._db = WorkflowDatabase(self.settings.workflow_db_path)
        return self._db

    @property
    def source(self) -> GitHubSource:
        if self._source is None:
            self._source = GitHubSource.from_settings(self.settings)
        return self._source

    @property
    def chat(self) -> ChatClient:
        if self._chat is None:
            self._chat = ChatClient.from_settings(self.settings)
        return self._chat

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = build_embedder(self.settings)
        return self._embedder

    def task(self, kind: str) -> EnrichmentTask:
        if kind == 'descriptions':
            return DescriptionTask(self.chat, self.source)
        if kind == 'seo':
            return SeoTask(self.chat)
        if kind == 'embeddings':
            return EmbeddingTask(self.embedder)
        raise HTTPException(status_code=404, detail=f"Unknown enrichment kind: {kind}")

    def search(self) -> SemanticSearch:
        return SemanticSearch(self.db, self.embedder, threshold=self.settings.search_threshold)

    def close(self) -> None:
        for client in (self._source, self._chat, self._embedder, self._db):
            if client is not None:
                client.close()


# MCP Models
class MCPRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: Optional[Union[str, int]] = None
    method: Optional[str] = None
    params: Optional[Dict[str, Any]] = None


class MCPResponse(BaseModel):
    jsonrpc: str = "2.0"
    id: Optional[Union[str, int]] = None
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None


# REST request bodies
class SyncRequest(BaseModel):
    offset: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, gt=0)


class EnrichRequest(BaseModel):
    offset: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, gt=0)
    strategy: PaginationStrategy = PaginationStrategy.PREFILTERED
    workflow_id: Optional[int] = None
    slug: Optional[str] = None


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=20, gt=0, le=100)


class AuditRequest(BaseModel):
    sample_size: int = Field(default=20, gt=0, le=200)


TOOLS = [
    {
        "name": "search_workflows",
        "description": "Semantic search for workflows matching a natural-language query",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
                "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 5}
            },
            "required": ["query"]
        }
    },
    {
        "name": "get_workflow",
        "description": "Get a workflow and its generated description and SEO metadata by slug",
        "inputSchema": {
            "type": "object",
            "properties": {
                "slug": {"type": "string", "description": "Workflow slug"}
            },
            "required": ["slug"]
        }
    },
    {
        "name": "browse_workflows",
        "description": "Browse the catalog by keyword, category and complexity",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Keyword filter"},
                "category": {"type": "string", "default": "all"},
                "complexity": {"type": "string", "enum": ["all", "Easy", "Medium", "Advanced"],
                               "default": "all"},
                "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 20},
                "offset": {"type": "integer", "minimum": 0, "default": 0}
            }
        }
    },
]


def workflow_detail(db: WorkflowDatabase, slug: str) -> Optional[Dict[str, Any]]:
    """A catalog entry with whatever artifacts it has."""
    workflow = db.get_workflow(slug)
    if workflow is None:
        return None
    workflow['description'] = db.get_description(workflow['id'])
    workflow['seo'] = db.get_seo_metadata(workflow['id'])
    return workflow


def browse(db: WorkflowDatabase, query: str = "", category: str = "all", complexity: str = "all",
           limit: int = 20, offset: int = 0) -> Dict[str, Any]:
    results, total = db.search_workflows(query, category=category, complexity=complexity,
                                         limit=limit, offset=offset)
    return {"workflows": results, "total": total, "offset": offset, "limit": limit,
            "has_more": offset + len(results) < total}


# MCP Handlers
def handle_mcp_request(services: Services, request: MCPRequest) -> MCPResponse:
    """Handle MCP requests and route to appropriate handler"""
    try:
        if not request.method:
            raise ValueError("No method specified")

        if request.method == "initialize":
            return handle_initialize(request.id)
        elif request.method == "tools/list":
            return MCPResponse(id=request.id, result={"tools": TOOLS})
        elif request.method == "tools/call":
            return handle_call_tool(services, request.id, request.params or {})
        else:
            return MCPResponse(
                id=request.id,
                error={"code": -32601, "message": f"Method not found: {request.method}"}
            )
    except CatalogError as e:
        logger.warning("MCP request failed: %s", e.message)
        return MCPResponse(
            id=request.id,
            error={"code": -32000, "message": e.message, "data": {"status": e.status_code}}
        )
    except (ValueError, TypeError) as e:
        return MCPResponse(id=request.id, error={"code": -32602, "message": f"Invalid params: {e}"})
    except Exception as e:
        logger.exception("Error handling MCP request")
        return MCPResponse(
            id=request.id,
            error={"code": -32603, "message": f"Internal error: {str(e)}"}
        )


def handle_initialize(request_id: Optional[Union[str, int]]) -> MCPResponse:
    """Handle MCP initialize request"""
    return MCPResponse(
        id=request_id,
        result={
            "serverInfo": {
                "name": SERVER_NAME,
                "version": SERVER_VERSION,
                "description": "MCP server for searching and browsing the n8n workflow catalog"
            },
            "capabilities": {
                "tools": {"enabled": True}
            }
        }
    )


def handle_call_tool(services: Services, request_id: Optional[Union[str, int]],
                     params: Dict[str, Any]) -> MCPResponse:
    """Handle tools/call request"""
    tool_name = params.get("name")
    tool_params = params.get("arguments") or params.get("parameters") or {}

    if tool_name == "search_workflows":
        query = str(tool_params.get("query") or "")
        limit = min(int(tool_params.get("limit", 5)), 100)
        result = services.search().search(query, limit=limit)
        return MCPResponse(id=request_id, result=result.to_dict())

    elif tool_name == "get_workflow":
        slug = tool_params.get("slug") or tool_params.get("workflow_id")
        if not slug:
            raise ValueError("slug is required")
        workflow = workflow_detail(services.db, str(slug))
        if workflow is None:
            return MCPResponse(id=request_id, error={"code": 404, "message": "Workflow not found"})
        return MCPResponse(id=request_id, result={"workflow": workflow})

    elif tool_name == "browse_workflows":
        result = browse(
            services.db,
            query=str(tool_params.get("query") or ""),
            category=tool_params.get("category") or "all",
            complexity=tool_params.get("complexity") or "all",
            limit=min(int(tool_params.get("limit", 20)), 100),
            offset=max(int(tool_params.get("offset", 0)), 0),
        )
        return MCPResponse(id=request_id, result=result)

    return MCPResponse(
        id=request_id,
        error={"code": 404, "message": f"Tool not found: {tool_name}"}
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI app; ``services`` is created from the environment if omitted."""
    configure_logging(services.settings.log_level if services is not None else None)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if app.state.services is not None:
            app.state.services.close()

    app = FastAPI(title=SERVER_NAME, version=SERVER_VERSION, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_services() -> Services:
        if app.state.services is None:
            app.state.services = Services()
        return app.state.services

    @app.exception_handler(CatalogError)
    async def catalog_error_handler(request: Request, exc: CatalogError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.post("/mcp")
    async def mcp_endpoint(request: Request):
        """Main MCP endpoint that handles JSON-RPC requests"""
        try:
            body = await request.json()
            mcp_request = MCPRequest(**body)
        except Exception as e:
            logger.error("Invalid request: %s", e)
            raise HTTPException(status_code=400, detail="Invalid request format")

        response = await run_in_threadpool(handle_mcp_request, get_services(), mcp_request)
        return response.model_dump(exclude_none=True)

    @app.post("/sync")
    def sync_endpoint(body: Optional[SyncRequest] = None):
        """Sync one window of the source repository into the catalog."""
        body = body or SyncRequest()
        services = get_services()
        return sync_catalog(services.db, services.source, offset=body.offset, limit=body.limit).to_dict()

    @app.post("/enrich/{kind}")
    def enrich_endpoint(kind: str, body: Optional[EnrichRequest] = None):
        """Run one enrichment batch: descriptions, seo or embeddings.

        With ``workflow_id`` or ``slug`` set, regenerates that workflow's artifact.
        """
        body = body or EnrichRequest()
        services = get_services()
        scheduler = EnrichmentScheduler(
            services.db,
            services.task(kind),
            strategy=body.strategy,
            request_delay=services.settings.enrichment_request_delay,
        )
        if body.workflow_id is not None:
            return scheduler.run_one(body.workflow_id).to_dict()
        if body.slug:
            return scheduler.run_one(body.slug).to_dict()
        return scheduler.run(offset=body.offset, limit=body.limit).to_dict()

    @app.post("/search")
    def search_endpoint(body: SearchRequest):
        """Semantic search over workflow embeddings."""
        return get_services().search().search(body.query, limit=body.limit).to_dict()

    @app.post("/audit")
    def audit_endpoint(body: Optional[AuditRequest] = None):
        """Spot-check generated descriptions against their workflows."""
        body = body or AuditRequest()
        services = get_services()
        return audit_descriptions(services.db, services.source, sample_size=body.sample_size).to_dict()

    @app.get("/workflows")
    def list_workflows_endpoint(q: str = "", category: str = "all", complexity: str = "all",
                                limit: int = 20, offset: int = 0):
        if limit <= 0 or limit > 100:
            raise ValueError("limit must be between 1 and 100")
        if offset < 0:
            raise ValueError("offset must be >= 0")
        return browse(get_services().db, q, category, complexity, limit, offset)

    @app.get("/workflows/{slug}")
    def get_workflow_endpoint(slug: str):
        workflow = workflow_detail(get_services().db, slug)
        if workflow is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return workflow

    @app.get("/stats")
    def stats_endpoint():
        return get_services().db.get_stats()

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "service": "n8n-workflow-catalog"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='N8N Workflow Catalog MCP Server')
    parser.add_argument('--host', type=str, default='0.0.0.0', help='Host to bind to')
    parser.add_argument('--port', type=int, default=8000, help='Port to listen on')
    parser.add_argument('--reload', action='store_true', help='Enable auto-reload')

    args = parser.parse_args()

    print(f"Starting MCP server on http://{args.host}:{args.port}")
    print(f"- MCP endpoint: http://{args.host}:{args.port}/mcp")
    print(f"- API docs: http://{args.host}:{args.port}/docs")

    uvicorn.run(
        "mcp_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info"
    )
