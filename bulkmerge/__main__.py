"""Run the service with uvicorn: `python -m bulkmerge`."""

import uvicorn

from bulkmerge.core import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "bulkmerge.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
