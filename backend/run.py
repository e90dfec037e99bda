"""
Start the Ads Decision Engine API with uvicorn: python run.py
Reload in development; WEB_CONCURRENCY workers in production.
"""

import os
import uvicorn

from app.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", 8000)),
        reload=not settings.is_production,
        workers=int(os.environ.get("WEB_CONCURRENCY", 4)) if settings.is_production else 1,
        log_level="info",
    )
