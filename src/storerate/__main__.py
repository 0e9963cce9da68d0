"""Run the API with uvicorn: ``python -m storerate`` or ``storerate``."""

import uvicorn

from .config import settings


def main() -> None:
    uvicorn.run("storerate.api:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
