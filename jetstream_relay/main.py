import logging
import sys

import uvicorn

from .app import create_app
from .config import load_settings
from .exceptions import ConfigError

log = logging.getLogger("relay")


# entrypoint
def main() -> None:
    try:
        settings = load_settings()
    except ConfigError as e:
        log.error("%s", e.message)
        sys.exit(1)
    # a second worker would open a second feed connection
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        reload=False,
        workers=1,
    )


if __name__ == "__main__":
    main()
