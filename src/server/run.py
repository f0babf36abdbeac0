#!/usr/bin/env python
import uvicorn
import os
from dotenv import load_dotenv
from pathlib import Path

from loguru import logger

if __name__ == "__main__":
    load_dotenv(Path.cwd() / ".env")
    logger.info("Cluster Certificate Control Service, start running!")
    log_level = os.getenv("LOG_LEVEL", "INFO").lower()

    uvicorn.run(
        "src.server.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=log_level,
    )
