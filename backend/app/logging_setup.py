import logging
import sys
from typing import Optional

def setup_logging(level: str = "INFO", engine_level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    # cold-start / fallback decisions log at DEBUG; turn them on without flooding everything else
    if engine_level:
        logging.getLogger("backend.recommender").setLevel(
            getattr(logging, engine_level.upper(), logging.INFO)
        )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
