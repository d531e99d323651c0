#!/usr/bin/env python3
"""
Charter Service v1.0
====================
HTTP surface over the two-phase organization template.

The caller identifies itself with an `X-Principal` header; pending state is
kept per principal, so two callers preparing at once never see each other's
instances.

  - Rate limiting (slowapi)
  - Configurable CORS allowlist
  - Structured logging (structlog)
  - Prometheus /metrics endpoint
  - Optional TTL on pending instances
"""

import os
import re
import time
from typing import Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

from charter_errors import MissingCacheError, NameTakenError, TemplateError
from charter_substrate import Receipt
from charter_template import OrganizationTemplate

# ============================================
# Configuration
# ============================================
API_VERSION = "1.0.0"
WRITE_LIMIT = os.environ.get("CHARTER_WRITE_LIMIT", "30/minute")
READ_LIMIT = os.environ.get("CHARTER_READ_LIMIT", "60/minute")

# CORS: comma-separated list of allowed origins, or "*" for open (dev only)
_CORS_RAW = os.environ.get("CHARTER_CORS_ORIGINS", "http://localhost:3000,http://localhost:8000")
ALLOWED_ORIGINS: List[str] = (
    ["*"] if _CORS_RAW == "*"
    else [o.strip() for o in _CORS_RAW.split(",") if o.strip()]
)

# ============================================
# Logging
# ============================================
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer(),
    ]
)
log = structlog.get_logger()

# ============================================
# Prometheus Metrics
# ============================================
REQUEST_COUNT = Counter("charter_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
REQUEST_LATENCY = Histogram("charter_request_duration_seconds", "Request latency", ["endpoint"])
PREPARED_COUNT = Counter("charter_instances_prepared_total", "Instances prepared")
FINALIZED_COUNT = Counter("charter_instances_finalized_total", "Instances finalized")
FAILURE_COUNT = Counter("charter_template_failures_total", "Rejected template calls", ["reason"])
PENDING_GAUGE = Gauge("charter_pending_instances", "Prepared instances waiting for finalize")

# ============================================
# Input Sanitization
# ============================================
_HTML_RE = re.compile(r"<[^>]+>")
_NULL_RE = re.compile(r"\x00")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

def sanitize(text: str) -> str:
    text = _NULL_RE.sub("", text)
    text = _HTML_RE.sub("", text)
    return text.strip()

def _check_address(v: str) -> str:
    if not _ADDRESS_RE.match(v):
        raise ValueError("must be a 0x-prefixed 20-byte hex address")
    return v.lower()

# ============================================
# Template
# ============================================
template = OrganizationTemplate()

def principal(x_principal: str = Header(...)) -> str:
    if not _ADDRESS_RE.match(x_principal):
        raise HTTPException(401, "Invalid X-Principal. Use a 0x-prefixed 20-byte address.")
    return x_principal.lower()

def _reject(e: TemplateError):
    FAILURE_COUNT.labels(e.reason).inc()
    if isinstance(e, MissingCacheError):
        raise HTTPException(404, e.reason)
    if isinstance(e, NameTakenError):
        raise HTTPException(409, e.reason)
    raise HTTPException(400, e.reason)

def _events(receipt: Receipt) -> List[Dict]:
    return [{"event": e.name, **e.args} for e in receipt.events]

# ============================================
# Rate Limiter
# ============================================
limiter = Limiter(key_func=get_remote_address)

# ============================================
# Models
# ============================================

class AssetCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    symbol: str = Field(..., min_length=1, max_length=20)
    decimals: Optional[int] = Field(None, ge=0, le=36, description="Omit to deploy an asset without decimals.")
    holders: Dict[str, int] = Field(default_factory=dict)

    @field_validator("name", "symbol")
    @classmethod
    def clean_text(cls, v):
        return sanitize(v)

    @field_validator("holders")
    @classmethod
    def check_holders(cls, v):
        return {_check_address(k): amount for k, amount in v.items()}

class TokenCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    symbol: str = Field(..., min_length=1, max_length=20)

    @field_validator("name", "symbol")
    @classmethod
    def clean_text(cls, v):
        return sanitize(v)

class PrepareRequest(BaseModel):
    external_asset: str
    wrap_token_name: str = Field(..., min_length=1, max_length=100)
    wrap_token_symbol: str = Field(..., min_length=1, max_length=20)
    aggregate_token_name: str = Field(..., min_length=1, max_length=100)
    aggregate_token_symbol: str = Field(..., min_length=1, max_length=20)

    @field_validator("external_asset")
    @classmethod
    def check_asset(cls, v):
        return _check_address(v)

    @field_validator("wrap_token_name", "wrap_token_symbol",
                     "aggregate_token_name", "aggregate_token_symbol")
    @classmethod
    def clean_text(cls, v):
        return sanitize(v)

class FinalizeRequest(BaseModel):
    id: str = Field("", max_length=63, description="Name label. Empty registers no name.")
    community_voting_settings: List[int]
    council_members: List[str]
    council_voting_settings: List[int]
    finance_period: Optional[int] = Field(None, ge=0, description="Seconds. Omit or 0 for 30 days.")

    @field_validator("council_members")
    @classmethod
    def check_members(cls, v):
        return [_check_address(m) for m in v]

class InstanceCreate(BaseModel):
    id: str = Field(..., max_length=63)
    external_asset: str
    voting_settings: List[int]
    authority: Optional[str] = None

    @field_validator("external_asset")
    @classmethod
    def check_asset(cls, v):
        return _check_address(v)

    @field_validator("authority")
    @classmethod
    def check_authority(cls, v):
        return _check_address(v) if v else None

# ============================================
# App
# ============================================
app = FastAPI(
    title="Charter Service",
    description="""
# Charter Service

**Council-governed organizations from a two-phase template.**

## Quick Start
1. `POST /assets` → deploy a sample external asset (dev only)
2. `POST /instances/prepare` → organization, custody, wrapper, aggregator
3. `POST /instances/finalize` → finance, council, votings, permissions, name
4. `GET /organizations/{address}/permissions` → inspect the wired ACL

Send `X-Principal: 0x...` on every state-changing call.
""",
    version=API_VERSION,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["X-Principal", "Content-Type"],
)

# ============================================
# Middleware: metrics + logging
# ============================================
@app.middleware("http")
async def instrument(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    latency = time.perf_counter() - start
    endpoint = request.url.path
    REQUEST_COUNT.labels(request.method, endpoint, response.status_code).inc()
    REQUEST_LATENCY.labels(endpoint).observe(latency)
    log.info("request", method=request.method, path=endpoint,
             status=response.status_code, latency_ms=round(latency * 1000, 1))
    return response

# ============================================
# Startup
# ============================================
@app.on_event("startup")
async def startup():
    PENDING_GAUGE.set(len(template.instance_cache))
    log.info("service_started", template=template.address, domain=template.registrar.domain,
             cache_ttl=template.instance_cache.ttl_seconds)

# ============================================
# Routes
# ============================================

@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.get("/health")
async def health():
    return {"status": "healthy", "version": API_VERSION,
            "template": template.address,
            "pending_instances": len(template.instance_cache),
            "orphaned_batches": len(template.orphans)}

# --- Dev helpers ---

@app.post("/assets", status_code=201)
@limiter.limit(WRITE_LIMIT)
async def create_asset(data: AssetCreate, request: Request):
    address = template.substrate.deploy_asset(data.name, data.symbol, data.decimals, data.holders)
    return {"address": address, "name": data.name, "symbol": data.symbol, "decimals": data.decimals}

# --- Two-phase flow ---

@app.post("/instances/prepare", status_code=201)
@limiter.limit(WRITE_LIMIT)
async def prepare_instance(data: PrepareRequest, request: Request, caller: str = Depends(principal)):
    try:
        result = template.prepare_instance(
            caller, data.external_asset,
            data.wrap_token_name, data.wrap_token_symbol,
            data.aggregate_token_name, data.aggregate_token_symbol,
        )
    except TemplateError as e:
        _reject(e)
    PREPARED_COUNT.inc()
    PENDING_GAUGE.set(len(template.instance_cache))
    cached = result.cached
    return {
        "dao": cached.dao.address,
        "acl": cached.acl.address,
        "agent": cached.agent.address,
        "token_wrapper": cached.token_wrapper.address,
        "voting_aggregator": cached.voting_aggregator.address,
        "events": _events(result.receipt),
    }

@app.post("/instances/finalize")
@limiter.limit(WRITE_LIMIT)
async def finalize_instance(data: FinalizeRequest, request: Request, caller: str = Depends(principal)):
    try:
        result = template.finalize_instance(
            caller, data.id,
            data.community_voting_settings,
            data.council_members,
            data.council_voting_settings,
            data.finance_period,
        )
    except TemplateError as e:
        _reject(e)
    finally:
        PENDING_GAUGE.set(len(template.instance_cache))
    FINALIZED_COUNT.inc()
    apps = result.apps
    return {
        "dao": result.dao.address,
        "name": result.name,
        "council_token": result.council_token.address,
        "apps": {
            "agent": apps.agent.address,
            "finance": apps.finance.address,
            "token_wrapper": apps.token_wrapper.address,
            "voting_aggregator": apps.voting_aggregator.address,
            "council_token_manager": apps.council_token_manager.address,
            "council_voting": apps.council_voting.address,
            "community_voting": apps.community_voting.address,
        },
        "audit": result.audit,
        "events": _events(result.receipt),
    }

@app.get("/instances/pending")
@limiter.limit(READ_LIMIT)
async def pending_instance(request: Request, caller: str = Depends(principal)):
    cached = template.pending(caller)
    if cached is None:
        return {"pending": False}
    return {"pending": True, "dao": cached.dao.address, "external_asset": cached.external_asset}

# --- Legacy single-phase flow ---

@app.post("/tokens", status_code=201)
@limiter.limit(WRITE_LIMIT)
async def create_token(data: TokenCreate, request: Request, caller: str = Depends(principal)):
    try:
        result = template.new_token(caller, data.name, data.symbol)
    except TemplateError as e:
        _reject(e)
    return {"token": result.token.address, "events": _events(result.receipt)}

@app.post("/instances", status_code=201)
@limiter.limit(WRITE_LIMIT)
async def create_instance(data: InstanceCreate, request: Request, caller: str = Depends(principal)):
    try:
        result = template.new_instance(caller, data.id, data.external_asset,
                                       data.voting_settings, data.authority)
    except TemplateError as e:
        _reject(e)
    apps = result.apps
    return {
        "dao": result.dao.address,
        "name": result.name,
        "authority": result.authority,
        "token": result.token.address,
        "apps": {
            "agent": apps.agent.address,
            "finance": apps.finance.address,
            "token_wrapper": apps.token_wrapper.address,
            "voting": apps.voting.address,
        },
        "audit": result.audit,
        "events": _events(result.receipt),
    }

# --- Read-back ---

@app.get("/organizations/{address}/permissions")
@limiter.limit(READ_LIMIT)
async def organization_permissions(address: str, request: Request):
    try:
        acl = template.acl_for(address.lower())
    except LookupError:
        raise HTTPException(404, "Organization not found")
    return {"dao": address.lower(), "acl": acl.address, "permissions": acl.dump()}

@app.get("/names/{label}")
@limiter.limit(READ_LIMIT)
async def resolve_name(label: str, request: Request):
    owner = template.registrar.resolve(label)
    if owner is None:
        raise HTTPException(404, "Name not registered")
    return {"label": label, "name": f"{label}.{template.registrar.domain}", "owner": owner}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    print(f"""
Charter Service v{API_VERSION}

Docs:     http://localhost:{port}/docs
Health:   http://localhost:{port}/health
Metrics:  http://localhost:{port}/metrics
""")
    uvicorn.run(app, host="0.0.0.0", port=port)
