#!/usr/bin/env python3
"""
kubedeploy server
Starts the FastAPI application under uvicorn.
"""

import uvicorn
from dotenv import load_dotenv

# .env must be loaded before the settings are first read
load_dotenv()

from kubedeploy.config import get_settings
from kubedeploy.core.logging import setup_logging

settings = get_settings()

# keep uvicorn from replacing the application's log configuration
setup_logging(settings)

if __name__ == "__main__":
    uvicorn.run(
        "kubedeploy.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_debug,
        log_level=settings.log_level.lower(),
        log_config=None,
    )
