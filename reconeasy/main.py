# reconeasy/main.py

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reconeasy.db import Base, engine, db_ping
from reconeasy import models  # noqa: F401  (registers tables on Base)
from reconeasy.reconciliation_routes import router as recon_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ensure tables exist (simple dev-mode migration)
Base.metadata.create_all(bind=engine)

app = FastAPI(title="ReconEasy API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()],
    allow_origin_regex=r"^https:\/\/.*\.(github\.dev|app\.github\.dev)$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(recon_router)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/db/ping")
def ping():
    return {"ok": db_ping() == 1}
