
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from billing.config import settings
from billing.middleware.exceptions import register_exception_handlers
from billing.routers import health, invoices
from billing.services.scheduler import lifespan

app = FastAPI(
    title="Billing",
    description="Recurring billing and invoice ledger",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(invoices.project_router, prefix="/api/projects", tags=["invoices"])
app.include_router(invoices.router, prefix="/api/invoices", tags=["invoices"])
