from __future__ import annotations

from fastapi import FastAPI

from src.api.appraisal import router as appraisal_router
from src.appraisal import PIPELINE_VERSION
from src.env_loader import load_env_file

load_env_file()

app = FastAPI(title="Appraisal Document Intelligence Service", version=PIPELINE_VERSION)
app.include_router(appraisal_router)


@app.get("/health", tags=["meta"])
async def health() -> dict[str, str]:
    return {"status": "ok", "version": PIPELINE_VERSION}
