"""HTTP API for the shield (FastAPI).

Endpoints:
    POST /v1/check           - Evaluate a candidate action
    POST /v1/learn           - Feed back a resolved round
    POST /v1/trades          - Record the client's trade
    POST /v1/outcomes        - Append a resolved outcome to the sequence
    POST /v1/reset           - Manual reset out of STANDBY (needs confirmed=true)
    GET  /v1/standby         - Standby status
    GET  /v1/stats           - Shield statistics and ops counters
    GET  /v1/ledger/verify   - Re-verify the audit ledger chain
    GET  /v1/health          - Health check
    GET  /metrics            - Prometheus exposition

Errors are returned as the ShieldError envelope
{code, message, retryable, http_status, details?} with its HTTP status.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictBool

from .config import ShieldConfig
from .errors import SHIELD_E_VALIDATION, ShieldError
from .metrics import instrument_fastapi
from .shield import Shield

logger = logging.getLogger("shield_gateway.server")


# ---------------------------
# Request Models
# ---------------------------

class CheckRequest(BaseModel):
    """Candidate action plus optional opaque context scalars."""
    candidate: str
    context: Dict[str, Any] = Field(default_factory=dict)


class LearnRequest(BaseModel):
    original: str
    actual: str
    was_inverted: StrictBool = False


class TradeRequest(BaseModel):
    direction: str
    stake: float


class OutcomeRequest(BaseModel):
    value: str
    predicted_value: Optional[str] = None
    timestamp_ms: Optional[int] = None


class ResetRequest(BaseModel):
    confirmed: StrictBool = False


def create_app(shield: Optional[Shield] = None) -> FastAPI:
    """Create FastAPI application with shield endpoints."""
    from . import __version__ as shield_version

    app = FastAPI(
        title="Shield Gateway",
        description="Decision gate with ensemble trap detection",
        version=shield_version,
    )

    if shield is None:
        shield = Shield(ShieldConfig.from_env(), start_scheduler=True)
    app.state.shield = shield

    @app.exception_handler(ShieldError)
    async def _shield_error_handler(request: Request, exc: ShieldError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(p) for p in e.get("loc", ())], "msg": str(e.get("msg", "")), "type": str(e.get("type", ""))}
            for e in exc.errors()
        ]
        err = ShieldError(
            code=SHIELD_E_VALIDATION,
            message="malformed request body",
            http_status=400,
            details={"errors": errors},
        )
        return JSONResponse(status_code=400, content=err.as_dict())

    instrument_fastapi(app)

    @app.post("/v1/check")
    def check(req: CheckRequest):
        return shield.check(req.candidate, req.context).to_dict()

    @app.post("/v1/learn")
    def learn(req: LearnRequest):
        shield.learn(req.original, req.actual, req.was_inverted)
        return {"ok": True, "adaptive_threshold": shield.adaptive_threshold, "is_standby": shield.is_standby}

    @app.post("/v1/trades")
    def record_trade(req: TradeRequest):
        shield.record_trade(req.direction, req.stake)
        return {"ok": True, "is_standby": shield.is_standby}

    @app.post("/v1/outcomes")
    def record_outcome(req: OutcomeRequest):
        event = shield.record_outcome(req.value, req.predicted_value, req.timestamp_ms)
        return {"ok": True, "event": event.to_dict(), "sequence_length": len(shield.sequence)}

    @app.post("/v1/reset")
    def manual_reset(req: ResetRequest):
        return shield.manual_reset(req.confirmed).to_dict()

    @app.get("/v1/standby")
    def standby_status():
        return shield.get_standby_status()

    @app.get("/v1/stats")
    def stats():
        return shield.get_stats()

    @app.get("/v1/ledger/verify")
    def verify_ledger():
        ok, reason, index = shield.ledger.verify_detailed()
        return {"ok": ok, "reason": reason, "index": index, "records": len(shield.ledger)}

    @app.get("/v1/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "mode": "STANDBY" if shield.is_standby else "ACTIVE",
            "persistence_suspended": shield.persistence.breaker.is_suspended(),
        }

    return app


def main():
    """
    Main entry point for the shield-gateway CLI.

    Usage:
        shield-gateway                    # Start on default port 8000
        shield-gateway --port 9000        # Start on custom port
        shield-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Shield Gateway - decision gate HTTP API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    shield-gateway                         Start on 0.0.0.0:8000
    shield-gateway --port 9000             Start on custom port
    shield-gateway --host 127.0.0.1        Bind to localhost only

Environment Variables:
    SHIELD_STATE_BACKEND   json | sqlite | memory (default: memory)
    SHIELD_STATE_PATH      Path of the persisted shield state
    SHIELD_LEDGER_PATH     Optional JSONL audit ledger sink
    SHIELD_METRICS_ENABLED If 0, /metrics is not mounted
        """
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    args = parser.parse_args()

    import uvicorn

    shield = Shield(ShieldConfig.from_env(), start_scheduler=True)
    app = create_app(shield)
    print(f"Starting Shield Gateway on {args.host}:{args.port}")
    try:
        uvicorn.run(app, host=args.host, port=args.port)
    finally:
        shield.close()
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
