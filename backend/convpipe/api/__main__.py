"""Worker entry point: ``python -m convpipe.api`` serves the pipeline API.

This is the process the shell supervisor spawns. uvicorn's own
"Application startup complete" line doubles as the readiness marker.
"""
import logging

import uvicorn

from convpipe.config import settings


def main() -> None:
    logging.basicConfig(level=settings.logging.level, format="%(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "convpipe.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
