from pathlib import Path
from dotenv import load_dotenv
from fastapi import FastAPI

from billing.database import init_db
from billing.log import configure_logging
from billing.routes import router

# Force-load .env (Windows-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

configure_logging()

app = FastAPI(title="Marketplace Billing Service")

app.include_router(router)

init_db()


@app.get("/health")
def health():
    return {"ok": True}
