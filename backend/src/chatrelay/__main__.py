"""Run the server: ``python -m chatrelay``."""

import logging

import uvicorn

from chatrelay.config import settings


def main() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger(__name__).info(f"Chat relay listening on http://{settings.host}:{settings.port}")
    uvicorn.run("chatrelay.api:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
