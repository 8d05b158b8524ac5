# === MODULE PURPOSE ===
# Web API for the position ledger.
# Provides FastAPI-based endpoints for positions and exchange sync.

from src.web.app import create_app

__all__ = ["create_app"]
