"""Application entry point for the Pet Paradise API."""

import logging

from petparadise.config import Config
from petparadise.webapp import create_app

logging.basicConfig(
    level=Config.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    app.run(debug=Config.APP_ENV != "production")
