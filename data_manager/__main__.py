# data_manager/__main__.py
"""
Run the API server.

Env vars:
- PORT (default: 3000)
- HOST (default: 0.0.0.0)
"""
import os

from dotenv import load_dotenv
load_dotenv()

import uvicorn

from data_manager.app import app
from data_manager import db as dbmod
from data_manager.monitoring import logger


def main() -> None:
    port = int(os.getenv("PORT", "3000"))
    host = os.getenv("HOST", "0.0.0.0")
    logger.info("Data Manager server starting", extra={"port": port, "db_path": dbmod.DB_PATH})
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
