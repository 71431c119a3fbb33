from collections import deque
from dataclasses import asdict
from pathlib import Path
import sqlite3
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Request
import structlog
from .schemas import MetricsResponse, WeeklyPricesRequest, WeeklyPricesResponse, WarmTriggered
from ..errors import NoLineupTickers, NothingResolved, ProviderUnavailable, WeekNotFound
from ..pipeline.lookup import parse_tickers
from ..services.container import ServiceContainer

router = APIRouter()
log = structlog.get_logger()

DEFAULT_ERROR_LOG = "./data/logs/error.log"

def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services

@router.get(
    '/health',
    summary="Health check",
    description="Returns store connectivity, the provider call budget and warm state.",
    tags=["Health"],
)
def health(services: ServiceContainer = Depends(get_services)):
    try:
        services.store.ping()
        warm_state = asdict(services.warm.state())
    except sqlite3.Error as e:
        raise HTTPException(503, f'db_error: {e}')
    return {
        'ok': True,
        'db': 'ok',
        'provider_configured': services.adapter.enabled,
        'rate_budget': services.limiter.status(),
        'warm': {**warm_state, 'in_flight': services.warm.in_flight},
    }

@router.get(
    '/metrics',
    response_model=MetricsResponse,
    summary="Ticker metrics",
    description="Cached return/risk snapshots per ticker; missing or stale entries are refreshed within the provider budget.",
    tags=["Metrics"],
)
async def get_metrics(
    tickers: Optional[str] = None,
    ticker: Optional[str] = None,
    include_overview: bool = True,
    use_daily: bool = True,
    cache_only: bool = False,
    services: ServiceContainer = Depends(get_services),
):
    wanted = parse_tickers(tickers if tickers is not None else ticker)
    if not wanted:
        raise HTTPException(400, 'Missing ticker.')
    return await services.lookup.lookup(
        wanted,
        include_overview=include_overview,
        use_daily=use_daily,
        cache_only=cache_only,
    )

@router.post(
    '/prices/weekly',
    response_model=WeeklyPricesResponse,
    summary="Resolve weekly prices",
    description="Resolves split-adjusted open/close prices for every lineup ticker of a league week.",
    tags=["Settlement"],
)
def resolve_weekly_prices(
    body: WeeklyPricesRequest,
    authorization: Optional[str] = Header(default=None),
    services: ServiceContainer = Depends(get_services),
):
    secret = services.settings.scoring_cron_secret
    if secret:
        token = authorization[7:] if authorization and authorization.startswith('Bearer ') else None
        if token != secret:
            raise HTTPException(401, 'Unauthorized.')
    if not body.league_id or not body.week_id:
        raise HTTPException(400, 'League and week are required.')
    try:
        result = services.settlement.resolve_week(body.league_id, body.week_id)
    except WeekNotFound as e:
        raise HTTPException(404, str(e))
    except NoLineupTickers as e:
        raise HTTPException(400, str(e))
    except NothingResolved as e:
        raise HTTPException(500, {'error': str(e), 'missing': e.missing})
    except ProviderUnavailable as e:
        raise HTTPException(500, f'provider_unavailable: {e}')
    return WeeklyPricesResponse(
        ok=True,
        resolved=result['resolved_count'],
        missing=result['missing'],
        run_id=result['run_id'],
    )

@router.post(
    '/cache/warm',
    response_model=WarmTriggered,
    status_code=202,
    summary="Trigger warm pass",
    description="Schedules a background warm pass over the universe unless one is already running.",
    tags=["Admin"],
)
async def warm_cache(services: ServiceContainer = Depends(get_services)):
    scheduled = services.warm.trigger()
    log.info("warm_requested", scheduled=scheduled)
    return WarmTriggered(ok=True, scheduled=scheduled)

@router.get(
    '/logs',
    summary="Read error logs",
    description="Returns the last N lines from the error log file.",
    tags=["Admin"],
)
def read_logs(lines: int = 200, services: ServiceContainer = Depends(get_services)):
    if lines < 1:
        raise HTTPException(400, 'lines must be >= 1')
    if lines > 2000:
        lines = 2000
    path = Path(services.settings.log_error_file or DEFAULT_ERROR_LOG)
    if not path.exists():
        raise HTTPException(404, 'log file not found')
    tail = deque(maxlen=lines)
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            tail.append(line.rstrip("\n"))
    return {"path": str(path), "lines": list(tail)}
