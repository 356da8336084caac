"""
LSAT Gateway HTTP application.

Routes:
  GET  /            public
  GET  /invoice     settlement state of an invoice (?id=<payment hash hex>)
  POST /invoice     create an invoice for {"amount": n}
  GET  /protected   requires a paid LSAT
  GET  /metrics     Prometheus metrics (guarded by LSAT_METRICS_TOKEN when set)

Any router can be protected the same way:

    protected = APIRouter(dependencies=[Depends(authorizer.require)])
"""

from __future__ import annotations

import hmac
import logging
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt

from .config import GatewayConfig
from .errors import LSAT_E_BAD_REQUEST, LSAT_E_INVOICE_NOT_FOUND, LSATError, lsat_error
from .invoices import InMemoryInvoiceGateway, InvoiceGateway, LndRestInvoiceGateway
from .metrics import instrument_fastapi
from .middleware import AuthDecision, LSATAuthorizer, LSATDenied
from .context import RequestContext

logger = logging.getLogger("lsat_gateway")


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class CreateInvoiceRequest(BaseModel):
    amount: Optional[StrictInt] = Field(default=None, description="Invoice amount; defaults to the configured amount")


def build_invoice_gateway(config: GatewayConfig) -> InvoiceGateway:
    if config.invoice_backend == "lnd":
        return LndRestInvoiceGateway(
            config.lnd_rest_url,
            config.lnd_macaroon_hex,
            tls_cert_path=config.lnd_tls_cert_path,
            timeout_seconds=config.gateway_timeout_seconds,
            default_expiry_seconds=config.invoice_expiry_seconds,
        )
    logger.warning("using in-memory invoice backend; invoices are simulated")
    return InMemoryInvoiceGateway()


def create_app(authorizer: Optional[LSATAuthorizer] = None) -> FastAPI:
    """Create FastAPI application with a public route and a protected route."""
    from . import __version__ as lsat_version

    if authorizer is None:
        config = GatewayConfig.load_from_env()
        authorizer = LSATAuthorizer(config, build_invoice_gateway(config))

    app = FastAPI(
        title="LSAT Gateway",
        description="Lightning-paid access tokens for protected routes",
        version=lsat_version,
    )
    app.state.authorizer = authorizer

    @app.exception_handler(LSATError)
    async def _lsat_error_handler(request: Request, exc: LSATError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(LSATDenied)
    async def _lsat_denied_handler(request: Request, exc: LSATDenied):
        decision = exc.decision
        return JSONResponse(status_code=decision.status_code, content=decision.as_dict(), headers=decision.headers)

    @app.middleware("http")
    async def _log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    metrics_token = (os.getenv("LSAT_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        # With a metrics token set, require it via
        #   Authorization: Bearer <token>  or  X-Metrics-Token: <token>
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and _same(authz.split(" ", 1)[1].strip(), metrics_token):
            return True
        return _same((req.headers.get("X-Metrics-Token") or "").strip(), metrics_token)

    instrument_fastapi(app, authorize=_authorize_metrics)

    @app.get("/")
    async def index() -> Dict[str, Any]:
        return {"message": "success!"}

    @app.get("/invoice")
    async def get_invoice(id: str = Query(..., description="payment hash, hex")) -> Dict[str, Any]:
        try:
            payment_hash = bytes.fromhex(id)
        except ValueError as e:
            raise lsat_error(LSAT_E_BAD_REQUEST, "id must be a hex payment hash") from e
        try:
            invoice = await authorizer.invoice_gateway.get_invoice(payment_hash)
        except LSATError as e:
            if e.code != LSAT_E_INVOICE_NOT_FOUND:
                raise
            raise lsat_error(LSAT_E_INVOICE_NOT_FOUND, e.message, http_status=404, **e.details) from e
        return invoice.to_dict()

    @app.post("/invoice")
    async def post_invoice(body: CreateInvoiceRequest, request: Request) -> Dict[str, Any]:
        ctx = RequestContext.from_starlette(request)
        invoice = await authorizer.create_invoice(ctx, amount=body.amount)
        return invoice.to_dict()

    protected = APIRouter(dependencies=[Depends(authorizer.require)])

    @protected.get("/protected")
    async def protected_route(request: Request) -> Dict[str, Any]:
        decision: AuthDecision = request.state.lsat
        return {
            "message": "Protected route! This message will only be returned if an invoice has been paid",
            "invoice": decision.invoice.payment_hash_hex if decision.invoice else None,
        }

    app.include_router(protected)
    return app


def main():
    """Run the gateway server."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="LSAT Gateway Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "5000")), help="Port to bind to")
    parser.add_argument("--log-level", default="info", help="Log level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
