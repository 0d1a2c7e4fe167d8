"""Entry point for running the vault chat API."""

import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()

if __name__ == "__main__":
    # PORT overrides the default 8000; RELOAD=false disables autoreload
    # (the session registry lives in memory and is lost on reload).
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("RELOAD", "true").lower() not in {"0", "false", "no"}

    uvicorn.run(
        "src.api.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=port,
        reload=reload,
    )
