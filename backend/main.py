"""Entrypoint: `python -m backend.main` serves `backend.src.app.main:app`."""

import logging

from backend.src.app.main import app
from backend.src.config import LOG_LEVEL


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8001)
