"""FastAPI web API for the Lead Engagement Brief engine.

Accepts a source bundle for one lead and returns the sales-facing summary.
Degraded summaries (generator rejected, sources missing) are still 200s;
the reason lives in ``meta``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import HTMLResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from leadbrief.brief.generator import generator_from_settings
from leadbrief.brief.pipeline import build_summary, enrich_marketing_properties, resolve_since_days
from leadbrief.config import settings, validate_config
from leadbrief.models import SourceBundle, SummaryResult
from leadbrief.policy import load_rules, load_timeline_policy

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_config()
    logger.info("Lead brief API ready (generator %s)",
                "configured" if settings.generator_configured else "not configured")
    yield


app = FastAPI(
    title="Lead Engagement Brief Engine",
    version=VERSION,
    description="Turn CRM and marketing activity for a lead into a sales-ready HTML summary.",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=False)


def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
):
    """Require a valid Bearer token when BRIEFING_API_KEY is set."""
    expected = settings.briefing_api_key
    if not expected:
        return  # auth disabled
    if not credentials or credentials.credentials != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class SummaryRequest(BaseModel):
    bundle: SourceBundle = Field(..., description="Raw source records for one lead")
    since_days: Optional[int] = Field(
        None, ge=1, description="Lookback for optional activity; defaults to SINCE_DAYS"
    )
    record_base_url: Optional[str] = Field(
        None, description="https:// base for record links; defaults to RECORD_BASE_URL"
    )
    use_generator: bool = Field(True, description="Set false to force the deterministic summary")


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    openai_configured: bool
    hubspot_configured: bool
    record_links_enabled: bool


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health", response_model=HealthResponse)
def health_check():
    """Health check: the service is running, plus which integrations are configured."""
    return HealthResponse(
        status="ok",
        version=VERSION,
        environment=settings.environment,
        openai_configured=settings.generator_configured,
        hubspot_configured=bool(settings.hubspot_token),
        record_links_enabled=settings.record_base_url.startswith("https://"),
    )


async def _summarize(request: SummaryRequest) -> SummaryResult:
    bundle = await enrich_marketing_properties(request.bundle)
    return await build_summary(
        bundle,
        rules=load_rules(),
        policy=load_timeline_policy(),
        generator=generator_from_settings() if request.use_generator else None,
        record_base_url=request.record_base_url,
        since_days=resolve_since_days(request.since_days),
    )


@app.post("/summary", response_model=SummaryResult, dependencies=[Depends(verify_api_key)])
async def summary_endpoint(request: SummaryRequest):
    """Build the summary and return it with its metadata."""
    result = await _summarize(request)
    logger.info("Summary served: source=%s failed_sources=%s", result.source, result.meta.failed_sources)
    return result


@app.post("/summary/html", response_class=HTMLResponse, dependencies=[Depends(verify_api_key)])
async def summary_html_endpoint(request: SummaryRequest):
    """Build the summary and return only the HTML fragment."""
    result = await _summarize(request)
    return HTMLResponse(content=result.summary_html)
