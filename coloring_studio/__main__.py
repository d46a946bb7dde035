import logging
import os

from . import create_app

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    app.run(debug=app.config["APP_ENV"] == "development", port=int(os.getenv("PORT", "5000")))
