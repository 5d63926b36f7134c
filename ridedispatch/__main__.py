"""
Serve the dispatch API.

    python -m ridedispatch          (or the ``ridedispatch`` console script)
"""

import uvicorn

from ridedispatch.config import settings


def main() -> None:
    uvicorn.run(
        "ridedispatch.api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
    )


if __name__ == "__main__":
    main()
